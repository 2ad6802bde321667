"""
Registry crawl client.

The reconciliation core only depends on the RegistryClient protocol. The
shipped implementation lists the catalog through the registry HTTP API with
requests and uses skopeo for tags, digests and manifest lists, with rate
limiting and retries on transient failures.
"""

import json
import logging
import re
import subprocess
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar
from urllib.parse import urljoin

import requests

from manifest_sync.auth import RegistryCredentials
from manifest_sync.error_utils import create_catalog_error, create_fetch_error, create_tag_list_error
from manifest_sync.retry_utils import retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANIFEST_LIST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryClient(Protocol):
    """What the inventory and reconciliation phases need from a registry.

    Implementations must be safe for concurrent use from worker threads.
    """

    domain: str

    def list_repositories(self) -> List[str]:
        ...

    def list_tags(self, repository: str) -> List[str]:
        ...

    def fetch_digest(self, repository: str, tag: str) -> str:
        ...

    def fetch_manifest_list(self, repository: str, tag: str) -> List[Dict[str, Any]]:
        ...


class TokenBucket:
    """Token bucket rate limiter shared by all worker threads"""

    def __init__(self, rate: float, burst: int):
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._last_update = time.monotonic()
        self._lock = Lock()

    def acquire(self) -> None:
        """Take one token, waiting if the bucket is empty"""
        with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update

            # Refill tokens based on elapsed time
            self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
            self._last_update = now

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return

            wait_time = (1.0 - self._tokens) / self.rate
            logger.debug(f"Rate limiting: waiting {wait_time:.2f}s (tokens: {self._tokens:.2f})")
            time.sleep(wait_time)
            self._tokens = 0.0
            self._last_update = time.monotonic()


def parse_bearer_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse a ``WWW-Authenticate: Bearer realm=...,service=...`` header.

    Returns the parameters, or None when the header is not a Bearer challenge
    with a realm.
    """
    if not header or not header.lower().startswith("bearer "):
        return None
    params = dict(_CHALLENGE_PARAM.findall(header[len("bearer "):]))
    if "realm" not in params:
        return None
    return params


def redact_command(cmd: List[str]) -> List[str]:
    """Return a copy of the command with any credentials redacted."""
    redacted = list(cmd)
    for i, token in enumerate(redacted):
        if token == "--creds" and i + 1 < len(redacted):
            user = redacted[i + 1].split(":", 1)[0]
            redacted[i + 1] = f"{user}:****"
    return redacted


class SkopeoRegistryClient:
    """Registry crawl client backed by requests (catalog) and skopeo (everything else)."""

    def __init__(self, domain: str, config_manager, credentials: Optional[RegistryCredentials] = None,
                 session: Optional[requests.Session] = None):
        """Initialize the client.

        Args:
            domain: Registry domain, e.g. "registry.io"
            config_manager: ConfigManager instance for accessing configuration
            credentials: Explicit credentials, or None to let skopeo use its own auth file
            session: requests session for the catalog endpoint (created if omitted)
        """
        self.domain = domain
        self.credentials = credentials
        self.tls_verify = config_manager.get_tls_verify()
        self.timeout = config_manager.get_registry_timeout()
        self.catalog_page_size = config_manager.get_catalog_page_size()

        self._retry = retry_with_backoff(
            max_retries=config_manager.get_max_retries(),
            initial_delay=config_manager.get_retry_initial_delay(),
            max_delay=config_manager.get_retry_max_delay(),
            exponential_base=config_manager.get_retry_exponential_base(),
            jitter=config_manager.get_retry_jitter(),
        )

        self._rate_limiter = None
        if config_manager.get_rate_limit_enabled():
            self._rate_limiter = TokenBucket(
                config_manager.get_rate_limit_rps(), config_manager.get_rate_limit_burst()
            )

        self._session = session or requests.Session()
        self._bearer_token: Optional[str] = None
        if not self.tls_verify:
            requests.packages.urllib3.disable_warnings()

    def _acquire_rate_limit_token(self) -> None:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()

    def _with_retry(self, func: Callable[..., T], *args) -> T:
        return self._retry(func)(*args)

    # Catalog (registry HTTP API)

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    def _request_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout": self.timeout, "verify": self.tls_verify}
        if self._bearer_token:
            kwargs["headers"] = {"Authorization": f"Bearer {self._bearer_token}"}
        elif self.credentials:
            kwargs["auth"] = (self.credentials.username, self.credentials.password)
        return kwargs

    def _fetch_bearer_token(self, challenge: Dict[str, str]) -> str:
        params = {"scope": challenge.get("scope") or "registry:catalog:*"}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        auth = (self.credentials.username, self.credentials.password) if self.credentials else None

        logger.debug(f"Requesting registry token from {challenge['realm']} (scope {params['scope']})")
        response = self._session.get(challenge["realm"], params=params, auth=auth,
                                     timeout=self.timeout, verify=self.tls_verify)
        response.raise_for_status()
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise ValueError(f"token endpoint {challenge['realm']} returned no token")
        return token

    def _get_catalog_page(self, url: str) -> requests.Response:
        self._acquire_rate_limit_token()
        response = self._session.get(url, **self._request_kwargs())
        if response.status_code == 401 and not self._bearer_token:
            challenge = parse_bearer_challenge(response.headers.get("WWW-Authenticate"))
            if challenge:
                self._bearer_token = self._fetch_bearer_token(challenge)
                response = self._session.get(url, **self._request_kwargs())
        response.raise_for_status()
        return response

    def list_repositories(self) -> List[str]:
        """List every repository in the registry catalog, following pagination.

        Raises:
            CatalogError: malformed=True when the domain does not serve a valid catalog
        """
        url: Optional[str] = f"{self.base_url}/v2/_catalog?n={self.catalog_page_size}"
        repositories: List[str] = []

        while url:
            try:
                response = self._with_retry(self._get_catalog_page, url)
            except (requests.RequestException, ValueError) as e:
                raise create_catalog_error(self.domain, e)

            try:
                data = response.json()
            except ValueError as e:
                raise create_catalog_error(self.domain, e, malformed=True)
            page = data.get("repositories", False) if isinstance(data, dict) else False
            if page is not None and not isinstance(page, list):
                raise create_catalog_error(
                    self.domain, ValueError(f"unexpected catalog payload: {str(data)[:200]}"), malformed=True
                )

            repositories.extend(page or [])
            next_link = response.links.get("next", {}).get("url")
            url = urljoin(self.base_url, next_link) if next_link else None

        logger.info(f"Catalog of {self.domain} lists {len(repositories)} repositories")
        return repositories

    # skopeo-backed calls

    def _build_skopeo_command(self, subcommand: str, args: List[str]) -> List[str]:
        cmd = ["skopeo", subcommand, f"--tls-verify={'true' if self.tls_verify else 'false'}"]
        if self.credentials:
            cmd.extend(["--creds", self.credentials.as_skopeo_creds()])
        return cmd + args

    def _execute_skopeo(self, cmd: List[str]) -> str:
        self._acquire_rate_limit_token()
        logger.debug(f"Running: {' '.join(redact_command(cmd))}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            # str() of these errors embeds the argv, --creds included
            raise subprocess.CalledProcessError(e.returncode, redact_command(cmd), e.output, e.stderr) from None
        except subprocess.TimeoutExpired as e:
            raise subprocess.TimeoutExpired(redact_command(cmd), e.timeout, e.output, e.stderr) from None
        return result.stdout

    def run_skopeo_command(self, subcommand: str, args: List[str]) -> str:
        """Run a skopeo command with retries; raises the last underlying error"""
        cmd = self._build_skopeo_command(subcommand, args)
        try:
            return self._with_retry(self._execute_skopeo, cmd)
        except subprocess.CalledProcessError as e:
            logger.error(f"Skopeo command failed: {' '.join(redact_command(cmd))}")
            logger.error(f"Error: {(e.stderr or '').strip()}")
            raise

    def _reference(self, repository: str, tag: Optional[str] = None) -> str:
        ref = f"{self.domain}/{repository}"
        return f"{ref}:{tag}" if tag is not None else ref

    def list_tags(self, repository: str) -> List[str]:
        """List all tags for a repository."""
        try:
            output = self.run_skopeo_command("list-tags", [f"docker://{self._reference(repository)}"])
            tags_data = json.loads(output)
            return list(tags_data.get("Tags") or [])
        except (subprocess.SubprocessError, OSError, ValueError, AttributeError) as e:
            raise create_tag_list_error(self.domain, repository, e)

    def fetch_digest(self, repository: str, tag: str) -> str:
        """Digest of the single-architecture image manifest at repository:tag."""
        reference = self._reference(repository, tag)
        try:
            output = self.run_skopeo_command("inspect", ["--no-tags", f"docker://{reference}"])
            digest = json.loads(output).get("Digest")
        except (subprocess.SubprocessError, OSError, ValueError, AttributeError) as e:
            raise create_fetch_error(reference, e)
        if not digest:
            raise create_fetch_error(reference, ValueError("inspect output has no Digest"))
        return digest

    def fetch_manifest_list(self, repository: str, tag: str) -> List[Dict[str, Any]]:
        """Entries of the manifest list (or OCI index) at repository:tag.

        A tag holding a plain image manifest has no entries and yields [].
        """
        reference = self._reference(repository, tag)
        try:
            output = self.run_skopeo_command("inspect", ["--raw", f"docker://{reference}"])
            manifest = json.loads(output)
        except (subprocess.SubprocessError, OSError, ValueError) as e:
            raise create_fetch_error(reference, e)

        if not isinstance(manifest, dict):
            raise create_fetch_error(reference, ValueError("raw manifest is not a JSON object"))

        entries = manifest.get("manifests")
        if entries is None:
            logger.warning(
                f"{reference} is not a manifest list (mediaType {manifest.get('mediaType', 'unknown')}); "
                "treating it as an empty list"
            )
            return []
        if manifest.get("mediaType") and manifest["mediaType"] not in MANIFEST_LIST_MEDIA_TYPES:
            logger.warning(f"{reference} has unexpected mediaType {manifest['mediaType']}")

        result = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("digest"):
                raise create_fetch_error(reference, ValueError(f"manifest list entry without digest: {entry}"))
            result.append(entry)
        return result
