"""
Inventory phase: list every repository of the registry together with its tags.
"""

import concurrent.futures
from threading import Lock
from typing import Dict, List

from manifest_sync.error_utils import TagListError, create_tag_list_error
from manifest_sync.logging_utils import get_logger

logger = get_logger(__name__)


def wait_fail_fast(futures: Dict[concurrent.futures.Future, str]) -> None:
    """Wait for all futures; on the first failure cancel the rest and raise it.

    Tasks that already started are left to finish but their results are
    ignored by the caller.
    """
    done, not_done = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_EXCEPTION)
    for future in done:
        error = future.exception()
        if error is not None:
            for pending in not_done:
                pending.cancel()
            raise error


def collect_repo_tags(client, max_workers: int = 16) -> Dict[str, List[str]]:
    """Map every repository in the catalog to its tags.

    Args:
        client: RegistryClient to crawl
        max_workers: Bound on concurrent tag listings

    Returns:
        Dict of repository -> list of tags (registry order)

    Raises:
        CatalogError: If the catalog cannot be listed
        TagListError: On the first repository whose tags cannot be listed
    """
    repositories = client.list_repositories()
    repo_tags: Dict[str, List[str]] = {}
    if not repositories:
        logger.info("Registry catalog is empty")
        return repo_tags

    lock = Lock()

    def _list(repository: str) -> None:
        try:
            tags = client.list_tags(repository)
        except TagListError:
            raise
        except Exception as e:
            raise create_tag_list_error(client.domain, repository, e) from e
        with lock:
            repo_tags[repository] = list(tags)

    logger.info(f"Listing tags of {len(repositories)} repositories (using {max_workers} workers)...")
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_repo = {executor.submit(_list, repository): repository for repository in repositories}
        try:
            wait_fail_fast(future_to_repo)
        except TagListError as e:
            logger.error(f"get tags of [{e.repository}] error: {e.message}")
            raise

    logger.info(f"Collected tags for {len(repo_tags)} repositories")
    return repo_tags
