"""
Command line entry point: audit a registry and print the manifest list
rebuild plan on stdout.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional, TextIO

from manifest_sync.auth import resolve_credentials
from manifest_sync.config_manager import ConfigManager
from manifest_sync.error_utils import ActionableError, ErrorCategory, ConfigurationError
from manifest_sync.inventory import collect_repo_tags
from manifest_sync.logging_utils import get_logger, log_exception, setup_logging
from manifest_sync.reconcile import DigestLedger, UpdateRecord, reconcile
from manifest_sync.registry_client import SkopeoRegistryClient
from manifest_sync.report_utils import build_report, format_summary, save_json
from manifest_sync.update_plan import emit_update_plan

logger = get_logger(__name__)


@dataclass
class RunResult:
    updates: List[UpdateRecord]
    ledger: DigestLedger
    plan: List[str] = field(default_factory=list)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manifest-sync",
        usage="%(prog)s [opts] registrydomain",
        description="Find top-level manifest lists that are out of sync with their per-architecture images "
                    "and print the docker manifest commands that rebuild them.",
        epilog="docker credentials are used from ~/.docker/config.json "
               "(or REGISTRY_USERNAME/REGISTRY_PASSWORD)",
    )
    parser.add_argument("domain", nargs="*", help="Registry domain, e.g. registry.io")
    parser.add_argument("-a", "--archs", help="',' separated list of architecture prefixes to process")
    parser.add_argument("--all", dest="all_archs", help="',' separated list of all architecture prefixes")
    parser.add_argument("--config", help="Path to config YAML (default: $CONFIG_FILE or config.yaml)")
    parser.add_argument("--max-workers", type=int, help="Concurrent fetches per repository")
    parser.add_argument("--repo-workers", type=int, help="Repositories reconciled at once (1 = sequential)")
    parser.add_argument("--inventory-workers", type=int, help="Concurrent tag listings during inventory")
    parser.add_argument("--report", metavar="PATH", help="Also write a JSON report of the updates to PATH")
    parser.add_argument("--report-timestamp", action="store_true",
                        help="Insert a timestamp into the report file name (plan.json -> plan-<ts>.json)")
    parser.add_argument("--summary", action="store_true", help="Print a table of unbalanced digests to stderr")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def normalize_domain(domain: str) -> str:
    """Strip scheme and trailing slashes: 'https://registry.io/' -> 'registry.io'"""
    for scheme in ("https://", "http://"):
        if domain.startswith(scheme):
            domain = domain[len(scheme):]
    return domain.rstrip("/")


def load_config(args: argparse.Namespace) -> ConfigManager:
    """ConfigManager with command line values applied and validated"""
    config_manager = ConfigManager(config_file=args.config, validate=False)
    config_manager.set_override("architectures.process", args.archs)
    config_manager.set_override("architectures.all", args.all_archs)
    config_manager.set_override("concurrency.tag_workers", args.max_workers)
    config_manager.set_override("concurrency.repo_workers", args.repo_workers)
    config_manager.set_override("concurrency.inventory_workers", args.inventory_workers)
    config_manager.validate_config()
    return config_manager


def run(client, config_manager: ConfigManager, domain: str, stdout: TextIO = sys.stdout) -> RunResult:
    """Inventory, reconcile and print the plan. Raises on the first failure."""
    repo_tags = collect_repo_tags(client, max_workers=config_manager.get_inventory_workers())

    ledger = DigestLedger()
    updates = reconcile(
        client,
        repo_tags,
        config_manager.get_all_architectures(),
        config_manager.get_architectures_to_process(),
        max_tag_workers=config_manager.get_tag_workers(),
        max_repo_workers=config_manager.get_repo_workers(),
        ledger=ledger,
    )

    logger.info(f"number of updates: {len(updates)}")
    result = RunResult(updates=updates, ledger=ledger)
    if not updates:
        return result

    result.plan = emit_update_plan(
        updates, domain, tool=config_manager.get_plan_tool(), insecure=config_manager.get_plan_insecure()
    )
    for line in result.plan:
        print(line, file=stdout)
    stdout.flush()
    return result


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        if len(args.domain) != 1:
            parser.print_usage(sys.stderr)
            raise ConfigurationError(
                "Exactly one registry domain is required",
                category=ErrorCategory.CONFIGURATION,
                suggestions=["Run: manifest-sync [opts] registrydomain"],
                details={"arguments": args.domain},
            )
        domain = normalize_domain(args.domain[0])
        if not domain:
            raise ConfigurationError("Registry domain must not be empty", category=ErrorCategory.CONFIGURATION)

        config_manager = load_config(args)
        if args.print_config:
            config_manager.print_config(domain)
            return 0

        credentials = resolve_credentials(domain)
        client = SkopeoRegistryClient(domain, config_manager, credentials=credentials)
        result = run(client, config_manager, domain)

        if args.summary and result.updates:
            print(format_summary(result.updates, result.ledger), file=sys.stderr)
        if args.report:
            report = build_report(
                domain,
                result.updates,
                result.plan,
                config_manager.get_architectures_to_process(),
                config_manager.get_all_architectures(),
            )
            try:
                save_json(args.report, report, timestamp=args.report_timestamp)
            except OSError as e:
                logger.error(f"Failed to write report {args.report}: {e}")
                return 1

    except ActionableError as e:
        if args.verbose:
            log_exception(logger, str(e), e)
        else:
            logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
