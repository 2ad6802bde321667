"""
Run summary and JSON report for the update records of a run.
"""
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tabulate import tabulate

from manifest_sync.logging_utils import get_logger
from manifest_sync.reconcile import DigestLedger, UpdateRecord

logger = get_logger(__name__)


def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """Insert a timestamp before the extension ('out/plan.json' -> 'out/plan-<ts>.json')"""
    if timestamp is None:
        timestamp = get_timestamp_suffix()
    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


def describe_direction(count: int) -> str:
    """Human-readable meaning of a non-zero balance"""
    if count > 0:
        return "missing from manifest list"
    return "not provided by any architecture image"


def summary_rows(records: Sequence[UpdateRecord], ledger: Optional[DigestLedger] = None) -> List[List[Any]]:
    rows = []
    for record in records:
        for digest, count in sorted(record.balance.items()):
            origin = ledger.origin(record.repo_tag, digest) if ledger else None
            rows.append([str(record.repo_tag), digest, f"{count:+d}", describe_direction(count), origin or ""])
    return rows


def format_summary(records: Sequence[UpdateRecord], ledger: Optional[DigestLedger] = None) -> str:
    """Table of every non-zero digest balance of the run"""
    headers = ["Image", "Digest", "Balance", "Meaning", "Last Seen In"]
    return tabulate(summary_rows(records, ledger), headers=headers, tablefmt="grid")


def build_report(domain: str, records: Sequence[UpdateRecord], plan: Sequence[str],
                 architectures: Sequence[str], all_architectures: Sequence[str]) -> Dict[str, Any]:
    return {
        "domain": domain,
        "generated_at": datetime.now().isoformat(timespec="seconds"),
        "architectures": list(architectures),
        "all_architectures": list(all_architectures),
        "number_of_updates": len(records),
        "updates": [
            {
                "repo_tag": str(record.repo_tag),
                "architectures": list(record.architectures),
                "balance": dict(sorted(record.balance.items())),
            }
            for record in records
        ],
        "plan": list(plan),
    }


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: File path to write to
        data: Data to serialize
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    if timestamp:
        path = add_timestamp_to_path(path)

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w") as f:
        json.dump(data, f, indent=2)
    logger.info(f"Saved report to {p}")
    return str(p)
