"""Command-line entry point for migration and reconciliation runs."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .errors import ConfigurationError, DestinationUnavailableError, MigrationError
from .models.migration import MigrationConfig, MigrationRun
from .models.report import ReconciliationReport
from .extractors.base import BaseExtractor
from .extractors.bubble_extractor import BubbleExtractor
from .loaders.base import DestinationStore
from .loaders.supabase_store import SupabaseStore
from .services.reconciliation import ReconciliationChecks
from .services.retry import RetryPolicy
from .services.schema_registry import SchemaRegistry
from .orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def create_store(config: MigrationConfig) -> DestinationStore:
    return SupabaseStore.from_config(config)


def create_extractor(config: MigrationConfig) -> BaseExtractor:
    return BubbleExtractor.from_config(config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bubble-migrate",
        description="Bubble to Supabase migration and reconciliation tool",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to migration config file (JSON)")
    common.add_argument("--env-file", help="Path to a .env file with credentials")
    common.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Migrate
    migrate_parser = subparsers.add_parser("migrate", parents=[common], help="Migrate an entity type")
    migrate_parser.add_argument("entity", help="Entity type to migrate, or 'all'")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Read and transform without writing")
    migrate_parser.add_argument("--batch-size", type=int, help="Rows per write request")

    # Reconcile
    reconcile_parser = subparsers.add_parser(
        "reconcile", parents=[common], help="Check (and optionally repair) migrated data"
    )
    reconcile_parser.add_argument("entity", help="Entity type to reconcile, or 'all'")
    reconcile_parser.add_argument("--repair", action="store_true", help="Renumber broken ordering groups")
    reconcile_parser.add_argument("--delete-orphans", action="store_true", help="Delete orphaned rows")
    reconcile_parser.add_argument(
        "--delete-duplicates", action="store_true", help="Delete duplicate rows, keeping the oldest"
    )
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Report repairs without writing")
    reconcile_parser.add_argument(
        "--strict", action="store_true", help="Exit 1 if any issue remains unresolved"
    )
    reconcile_parser.add_argument(
        "--compare-source", action="store_true", help="Compare counts against the Bubble API"
    )

    # Report
    report_parser = subparsers.add_parser("report", parents=[common], help="Read-only reconciliation report")
    report_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    report_parser.add_argument(
        "--compare-source", action="store_true", help="Compare counts against the Bubble API"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not args.command:
        parser.print_help()
        return EXIT_FATAL

    try:
        if args.command == "migrate":
            return run_migrate(args)
        if args.command == "reconcile":
            return run_reconcile(args)
        return run_report(args)
    except MigrationError as e:
        if e.fatal:
            logger.error(f"Fatal: {e}")
            return EXIT_FATAL
        logger.error(str(e))
        return EXIT_FAILURES


def load_config(args, require_legacy: bool = True) -> MigrationConfig:
    """Config file, then environment, then command-line flags."""
    base = MigrationConfig.from_json_file(args.config) if args.config else None
    config = MigrationConfig.from_env(base, env_file=args.env_file)

    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "batch_size", None):
        config.batch_size = args.batch_size

    problems = config.validate(require_legacy=require_legacy)
    if problems:
        raise ConfigurationError("; ".join(problems))
    return config


def _entities(value: str) -> Optional[List[str]]:
    return None if value == "all" else [value]


def _connect(config: MigrationConfig, registry: SchemaRegistry) -> DestinationStore:
    store = create_store(config)
    table = registry.get(registry.migration_order()[0]).table
    if not store.validate_connection(table):
        raise DestinationUnavailableError(f"Cannot reach Supabase at {config.supabase_url}")
    return store


def run_migrate(args) -> int:
    """Run a migration for one entity type (and nothing else) or all of them."""
    config = load_config(args)
    registry = SchemaRegistry(config.schemas_file)
    entities = _entities(args.entity)
    registry.migration_order(entities)

    store = _connect(config, registry)
    orchestrator = MigrationOrchestrator(config, create_extractor(config), store, registry=registry)

    try:
        run = orchestrator.migrate(entities)
    finally:
        if orchestrator.run is not None:
            print_migration_summary(orchestrator.run)

    return EXIT_FAILURES if run.has_failures else EXIT_OK


def run_reconcile(args) -> int:
    """Run reconciliation checks with the requested repairs."""
    config = load_config(args, require_legacy=args.compare_source)
    registry = SchemaRegistry(config.schemas_file)
    entities = _entities(args.entity)
    registry.migration_order(entities)

    store = _connect(config, registry)
    checks = ReconciliationChecks(
        store, registry, dry_run=config.dry_run, retry=RetryPolicy.from_config(config.retry)
    )
    report = checks.report(
        entities,
        repair=args.repair,
        delete_orphans=args.delete_orphans,
        delete_duplicates=args.delete_duplicates,
        pager=create_extractor(config) if args.compare_source else None,
    )
    print_reconciliation_summary(report)

    if args.strict and report.has_unresolved:
        logger.warning("Unresolved reconciliation issues remain")
        return EXIT_FAILURES
    return EXIT_OK


def run_report(args) -> int:
    """Print a read-only reconciliation report for every entity type."""
    config = load_config(args, require_legacy=args.compare_source)
    registry = SchemaRegistry(config.schemas_file)

    store = _connect(config, registry)
    checks = ReconciliationChecks(store, registry, dry_run=True, retry=RetryPolicy.from_config(config.retry))
    report = checks.report(pager=create_extractor(config) if args.compare_source else None)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_reconciliation_summary(report)
    return EXIT_OK


def print_migration_summary(run: MigrationRun) -> None:
    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" if not run.errors else "MIGRATION ABORTED")
    print("=" * 60)
    print(f"Status: {run.status.value}" + (" (dry run)" if run.dry_run else ""))
    print(f"{'Entity':<16}{'Migrated':>10}{'Skipped':>10}{'Failed':>10}")
    print("-" * 46)
    for step in run.steps:
        print(f"{step.entity:<16}{step.records_migrated:>10}{step.records_skipped:>10}{step.records_failed:>10}")
    print("-" * 46)
    print(
        f"{'total':<16}{run.total_records_migrated:>10}"
        f"{run.total_records_skipped:>10}{run.total_records_failed:>10}"
    )
    if run.duration_seconds:
        print(f"Duration: {run.duration_seconds:.2f} seconds")


def print_reconciliation_summary(report: ReconciliationReport) -> None:
    print("\n" + "=" * 60)
    print("RECONCILIATION REPORT")
    print("=" * 60)
    print(f"{'Entity':<16}{'Rows':>8}{'Orphans':>10}{'Dupes':>8}{'Ordering':>10}{'Repaired':>10}")
    print("-" * 62)
    for result in report.entities:
        repaired = result.orphans_deleted + result.duplicates_deleted + result.rows_reordered
        print(
            f"{result.entity:<16}{result.row_count:>8}"
            f"{len({o.row_id for o in result.orphans}):>10}{result.duplicate_rows:>8}"
            f"{len(result.ordering_violations):>10}{repaired:>10}"
        )
        if result.counts and not result.counts.matches:
            print(
                f"  count mismatch: bubble {result.counts.source_count}, "
                f"supabase {result.counts.destination_count}"
            )
    print("-" * 62)
    print("Unresolved issues remain" if report.has_unresolved else "No unresolved issues")


if __name__ == "__main__":
    sys.exit(main())
