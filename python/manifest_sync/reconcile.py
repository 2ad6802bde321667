"""
Reconciliation of top-level manifest lists against architecture images.

Every architecture image observed for ``<arch>/<repo>:<tag>`` adds one to the
balance of its digest under ``<repo>:<tag>``; every digest declared by the
top-level manifest list ``<repo>:<tag>`` subtracts one. A RepoTag whose
balance is not all zeros needs its manifest list rebuilt.

The sign tells over-declared (negative) from under-declared (positive)
digests. The ledger also keeps the origin of the last write per digest so the
run summary can say where a stray digest came from.
"""

import concurrent.futures
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from manifest_sync.architectures import classify, split_repository
from manifest_sync.error_utils import ActionableError, create_fetch_error
from manifest_sync.inventory import wait_fail_fast
from manifest_sync.logging_utils import get_logger

logger = get_logger(__name__)

TOP_LEVEL = "top-level"


@dataclass(frozen=True, order=True)
class RepoTag:
    """Architecture-stripped repository and tag, e.g. ``rck:latest``"""

    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


@dataclass(frozen=True)
class UpdateRecord:
    """A top-level manifest list that must be rebuilt from ``architectures``"""

    repo_tag: RepoTag
    architectures: Tuple[str, ...]
    balance: Dict[str, int] = field(default_factory=dict, compare=False)


@dataclass
class _Entry:
    digests: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    architectures: List[str] = field(default_factory=list)
    origins: Dict[str, str] = field(default_factory=dict)


class DigestLedger:
    """Per-RepoTag digest balances shared by all fetch tasks of a run.

    Each record_* call is one critical section, so an entry is created and
    mutated atomically and readers never see a half-applied observation.
    """

    def __init__(self):
        self._lock = Lock()
        self._entries: Dict[RepoTag, _Entry] = {}

    def _entry(self, repo_tag: RepoTag) -> _Entry:
        # Caller holds the lock
        entry = self._entries.get(repo_tag)
        if entry is None:
            entry = self._entries[repo_tag] = _Entry()
        return entry

    def record_architecture_digest(self, repo_tag: RepoTag, architecture: str, digest: str) -> None:
        """Count one architecture image with ``digest`` towards ``repo_tag``"""
        with self._lock:
            entry = self._entry(repo_tag)
            entry.architectures.append(architecture)
            entry.digests[digest] += 1
            entry.origins[digest] = architecture
        logger.debug(f"\tdigests[{repo_tag}][{digest}] += 1")

    def record_manifest_list(self, repo_tag: RepoTag, digests: Iterable[str]) -> None:
        """Discount every digest declared by the top-level manifest list of ``repo_tag``.

        The entry is created even for an empty list.
        """
        digests = list(digests)
        with self._lock:
            entry = self._entry(repo_tag)
            for digest in digests:
                entry.digests[digest] -= 1
                entry.origins[digest] = TOP_LEVEL
        for digest in digests:
            logger.debug(f"\tdigests[{repo_tag}][{digest}] -= 1")

    def repo_tags(self) -> List[RepoTag]:
        with self._lock:
            return sorted(self._entries)

    def balance(self, repo_tag: RepoTag) -> Dict[str, int]:
        with self._lock:
            entry = self._entries.get(repo_tag)
            return dict(entry.digests) if entry else {}

    def architectures(self, repo_tag: RepoTag) -> List[str]:
        with self._lock:
            entry = self._entries.get(repo_tag)
            return list(entry.architectures) if entry else []

    def origin(self, repo_tag: RepoTag, digest: str) -> Optional[str]:
        """Architecture (or ``top-level``) that last touched ``digest`` for ``repo_tag``"""
        with self._lock:
            entry = self._entries.get(repo_tag)
            return entry.origins.get(digest) if entry else None

    def is_consistent(self, repo_tag: RepoTag) -> bool:
        return all(count == 0 for count in self.balance(repo_tag).values())

    def unbalanced(self) -> List[UpdateRecord]:
        """UpdateRecords for every RepoTag with a non-zero count, sorted by RepoTag"""
        records = []
        with self._lock:
            for repo_tag in sorted(self._entries):
                entry = self._entries[repo_tag]
                off = {digest: count for digest, count in entry.digests.items() if count != 0}
                if off:
                    records.append(UpdateRecord(repo_tag, tuple(entry.architectures), off))
        return records


def _fetch_architecture_tag(client, ledger: DigestLedger, repository: str, canonical: str,
                            architecture: str, tag: str) -> None:
    """registry.com/arm64/image:tag"""
    digest = client.fetch_digest(repository, tag)
    ledger.record_architecture_digest(RepoTag(canonical, tag), architecture, digest)


def _fetch_top_level_tag(client, ledger: DigestLedger, repository: str, tag: str) -> None:
    """registry.com/image:tag"""
    entries = client.fetch_manifest_list(repository, tag)
    ledger.record_manifest_list(RepoTag(repository, tag), [entry["digest"] for entry in entries])


def _reconcile_repository(client, ledger: DigestLedger, repository: str, tags: Sequence[str],
                          architecture: str, max_tag_workers: int) -> None:
    """Fan the tags of one repository out to a pool and wait for all of them"""
    if not tags:
        return

    canonical = split_repository(repository)[1] if architecture else repository

    def _task(tag: str) -> None:
        logger.info(f"{repository}:{tag}")
        try:
            if architecture:
                _fetch_architecture_tag(client, ledger, repository, canonical, architecture, tag)
            else:
                _fetch_top_level_tag(client, ledger, repository, tag)
        except ActionableError:
            raise
        except Exception as e:
            raise create_fetch_error(f"{client.domain}/{repository}:{tag}", e) from e

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(max_tag_workers, len(tags))) as executor:
        wait_fail_fast({executor.submit(_task, tag): tag for tag in tags})


def plan_repositories(repo_tags: Mapping[str, Sequence[str]], all_architectures: Sequence[str],
                      architectures_to_process: Sequence[str]) -> List[Tuple[str, str]]:
    """(repository, architecture) pairs to reconcile; architecture is "" for top-level.

    Repositories of excluded architectures are dropped here, before any fetch.
    """
    selected = []
    for repository in repo_tags:
        prefix, rest = split_repository(repository)
        architecture, should_process = classify(prefix, all_architectures, architectures_to_process)
        if not should_process:
            logger.debug(f"Skipping {repository}: architecture {architecture} not selected")
            continue
        if architecture and not rest:
            logger.warning(f"Skipping {repository}: architecture namespace without an image name")
            continue
        selected.append((repository, architecture))
    return selected


def reconcile(client, repo_tags: Mapping[str, Sequence[str]], all_architectures: Sequence[str],
              architectures_to_process: Sequence[str], max_tag_workers: int = 8,
              max_repo_workers: int = 1, ledger: Optional[DigestLedger] = None) -> List[UpdateRecord]:
    """Find the top-level manifest lists that do not match their architecture images.

    Args:
        client: RegistryClient providing digests and manifest lists
        repo_tags: Inventory from collect_repo_tags
        all_architectures: Every architecture prefix the registry uses
        architectures_to_process: Architectures selected for this run
        max_tag_workers: Bound on concurrent fetches within one repository
        max_repo_workers: Bound on repositories processed at once (1 = sequential)
        ledger: Ledger to fold into (a fresh one by default)

    Returns:
        UpdateRecords for every inconsistent RepoTag

    Raises:
        FetchError: The first fetch failure; no partial result is returned
    """
    ledger = ledger if ledger is not None else DigestLedger()
    selected = plan_repositories(repo_tags, all_architectures, architectures_to_process)
    logger.info(f"Reconciling {len(selected)}/{len(repo_tags)} repositories")

    if max_repo_workers <= 1:
        for repository, architecture in selected:
            _reconcile_repository(client, ledger, repository, repo_tags[repository], architecture, max_tag_workers)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_repo_workers) as executor:
            wait_fail_fast({
                executor.submit(_reconcile_repository, client, ledger, repository, repo_tags[repository],
                                architecture, max_tag_workers): repository
                for repository, architecture in selected
            })

    return ledger.unbalanced()
