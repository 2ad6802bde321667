"""Turn UpdateRecords into manifest create/push command lines"""

from typing import Iterable, List

from manifest_sync.reconcile import UpdateRecord


def top_level_image(domain: str, record: UpdateRecord) -> str:
    return f"{domain}/{record.repo_tag}"


def architecture_image(domain: str, architecture: str, record: UpdateRecord) -> str:
    return f"{domain}/{architecture}/{record.repo_tag}"


def emit_update_plan(records: Iterable[UpdateRecord], domain: str, tool: str = "docker",
                     insecure: bool = True) -> List[str]:
    """Build the shell commands that rebuild each stale manifest list.

    Two lines per record, in record order: a ``manifest create --amend`` naming
    the top-level image followed by one image per contributing architecture
    (duplicates kept), and a ``manifest push`` of the top-level image. Nothing
    is executed.
    """
    create_cmd = [tool, "manifest", "create"] + (["--insecure"] if insecure else []) + ["--amend"]
    push_cmd = [tool, "manifest", "push"] + (["--insecure"] if insecure else [])

    lines = []
    for record in records:
        top_level = top_level_image(domain, record)
        images = [architecture_image(domain, arch, record) for arch in record.architectures]
        lines.append(" ".join(create_cmd + [top_level] + images))
        lines.append(" ".join(push_cmd + [top_level]))
    return lines
