"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory registry shared by the tests.
"""
import sys
from pathlib import Path
from threading import Lock

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)


class FakeRegistry:
    """In-memory RegistryClient.

    ``images`` maps "repo:tag" to a digest (architecture images) or to a list
    of digests (top-level manifest lists). ``failures`` maps a call key such as
    "fetch_digest:amd64/rck:latest" to the exception it should raise.
    """

    def __init__(self, domain="registry.io", images=None, failures=None):
        self.domain = domain
        self.images = dict(images or {})
        self.failures = dict(failures or {})
        self.calls = []
        self._lock = Lock()

    def _record(self, key):
        with self._lock:
            self.calls.append(key)
        if key in self.failures:
            raise self.failures[key]

    def list_repositories(self):
        self._record("list_repositories")
        seen = []
        for ref in self.images:
            repo = ref.rsplit(":", 1)[0]
            if repo not in seen:
                seen.append(repo)
        return seen

    def list_tags(self, repository):
        self._record(f"list_tags:{repository}")
        return [ref.rsplit(":", 1)[1] for ref in self.images if ref.rsplit(":", 1)[0] == repository]

    def fetch_digest(self, repository, tag):
        self._record(f"fetch_digest:{repository}:{tag}")
        return self.images[f"{repository}:{tag}"]

    def fetch_manifest_list(self, repository, tag):
        self._record(f"fetch_manifest_list:{repository}:{tag}")
        return [{"digest": d, "platform": {}} for d in self.images[f"{repository}:{tag}"]]

    def fetched(self, prefix):
        return [c for c in self.calls if c.startswith(prefix)]


@pytest.fixture
def rck_registry():
    """registry.io with rck:latest listing AAA, amd64 at AAA and s390x at BBB"""
    return FakeRegistry(
        images={
            "rck:latest": ["sha256:AAA"],
            "amd64/rck:latest": "sha256:AAA",
            "s390x/rck:latest": "sha256:BBB",
        }
    )


@pytest.fixture
def make_registry():
    """Factory for FakeRegistry instances"""
    return FakeRegistry
