"""Architecture namespace classification for repository paths"""

from typing import Sequence, Tuple


def split_repository(repository: str) -> Tuple[str, str]:
    """Split a repository path into its first segment and the remainder.

    "amd64/rck" -> ("amd64", "rck"), "rck" -> ("rck", "")
    """
    first, _, rest = repository.partition("/")
    return first, rest


def classify(prefix: str, all_architectures: Sequence[str],
             architectures_to_process: Sequence[str]) -> Tuple[str, bool]:
    """Classify the first path segment of a repository.

    Returns:
        ("", True) for a top-level repository (prefix is not an architecture),
        (prefix, False) for an architecture excluded from this run,
        (prefix, True) for a selected architecture.
    """
    if prefix not in all_architectures:
        return "", True
    if prefix not in architectures_to_process:
        return prefix, False
    return prefix, True
