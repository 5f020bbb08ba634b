"""Migration orchestrator - runs entity types through extract, transform and load."""

import json
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import (
    DestinationUnavailableError,
    MissingReferenceError,
    RecordValidationError,
    SkipRateExceededError,
    TransientIOError,
)
from .models.migration import (
    MigrationConfig,
    MigrationRun,
    MigrationStep,
    MigrationStatus,
)
from .models.record import DestinationRow, LegacyRecord, RecordStatus, TransformSkip
from .services.id_mapper import IdentifierMapper
from .services.retry import RetryPolicy
from .services.schema_registry import SchemaRegistry
from .services.transformer import RecordTransformer
from .extractors.base import BaseExtractor
from .extractors.bubble_extractor import BubbleExtractor
from .loaders.base import DestinationStore
from .loaders.batch_writer import BatchedWriter, WriteResult
from .loaders.supabase_store import SupabaseStore

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Orchestrates a migration run.

    Handles:
    - Strict topological order of entity types
    - Mapper preloading from the destination's legacy-id column
    - Paged extraction, transformation and batched writes per entity type
    - Join-table links
    - Skip and failure tallies with a detail log per source id
    - Skip-rate guard against systemic schema mismatches
    - JSON run report
    """

    def __init__(
        self,
        config: MigrationConfig,
        extractor: BaseExtractor,
        store: DestinationStore,
        registry: Optional[SchemaRegistry] = None,
        mapper: Optional[IdentifierMapper] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            extractor: Legacy record pager
            store: Destination store
            registry: Entity schemas; loaded from ``config.schemas_file`` if omitted
            mapper: Identifier mapper for this run; a fresh one if omitted
            sleep: Sleep function for retry backoff (injectable for tests)
        """
        self.config = config
        self.extractor = extractor
        self.store = store
        self.registry = registry or SchemaRegistry(config.schemas_file)
        self.mapper = mapper or IdentifierMapper()
        self.retry = RetryPolicy.from_config(config.retry, sleep=sleep)
        self.writer = BatchedWriter(
            store,
            self.mapper,
            retry=self.retry,
            batch_size=config.batch_size,
            dry_run=config.dry_run,
            update_existing=config.update_existing,
        )
        fallback = self._fetch_missing_reference if config.fetch_missing_references else None
        self.transformer = RecordTransformer(
            self.registry, self.mapper, config, reference_fallback=fallback
        )

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self._preloaded: Set[str] = set()
        self._fetching: Set[Tuple[str, str]] = set()
        self._migrated_in_run: Set[str] = set()

    @classmethod
    def from_config(cls, config: MigrationConfig) -> "MigrationOrchestrator":
        """Build an orchestrator against the live Bubble API and Supabase project."""
        return cls(
            config,
            extractor=BubbleExtractor.from_config(config),
            store=SupabaseStore.from_config(config),
        )

    def migrate(self, entity_types: Optional[List[str]] = None) -> MigrationRun:
        """
        Migrate entity types in dependency order.

        Args:
            entity_types: Entity types to migrate; all of them when omitted.
                Dependencies outside this list are resolved from rows already
                in the destination.

        Returns:
            MigrationRun with one step per entity type

        Raises:
            MigrationError: a run-fatal error (the run is still reported)
        """
        order = self.registry.migration_order(entity_types)
        self.run = MigrationRun(name=self.config.name, dry_run=self.config.dry_run)
        self.run.started_at = datetime.utcnow()
        self.run.metadata["order"] = order
        self.run.metadata["config"] = self.config.to_dict()

        if self.config.dry_run:
            logger.info("Dry run: reads and transforms only, nothing is written")
        logger.info(f"Migration order: {' -> '.join(order)}")

        try:
            for entity in order:
                self._migrate_entity(entity)

            self.run.update_totals()
            if self.run.has_failures:
                self.run.status = MigrationStatus.COMPLETED_WITH_ERRORS
            else:
                self.run.status = MigrationStatus.COMPLETED
            logger.info("=== MIGRATION COMPLETED ===")

        except Exception as e:
            logger.error(f"Migration failed: {e}")
            self.run.status = MigrationStatus.FAILED
            self.run.errors.append({
                "entity": self.run.current_step,
                "error": str(e),
                "error_type": type(e).__name__,
                "timestamp": datetime.utcnow().isoformat(),
            })
            raise

        finally:
            self.run.completed_at = datetime.utcnow()
            self.run.update_totals()
            if self.config.save_report:
                self._save_report()

        return self.run

    def _migrate_entity(self, entity: str) -> MigrationStep:
        """Migrate one entity type."""
        schema = self.registry.get(entity)
        step = self.run.add_step(entity, schema.table)
        step.status = MigrationStatus.EXTRACTING
        step.started_at = datetime.utcnow()
        self.run.current_step = entity

        logger.info(f"=== {entity.upper()} -> {schema.table} ===")

        try:
            for name in [entity] + self.registry.requirements(entity):
                self._preload(name)
            self._register_parent_positions(entity)

            for page in self.extractor.pages(entity, self.config.page_size):
                step.status = MigrationStatus.LOADING
                self._migrate_page(entity, page, step)
                self._check_skip_rate(step)

            aliased = self.transformer.alias_known_duplicates(entity)
            if aliased:
                logger.info(f"Mapped {aliased} known {entity} duplicates to their kept rows")

            step.status = MigrationStatus.COMPLETED
            self._migrated_in_run.add(entity)
            logger.info(
                f"{entity}: {step.records_migrated} migrated, {step.records_skipped} skipped, "
                f"{step.records_failed} failed ({step.records_processed} processed)"
            )

        except Exception:
            step.status = MigrationStatus.FAILED
            raise

        finally:
            step.completed_at = datetime.utcnow()

        return step

    def _migrate_page(self, entity: str, page: List[LegacyRecord], step: MigrationStep) -> None:
        """Transform and write one page of records."""
        schema = self.registry.get(entity)
        rows: List[DestinationRow] = []
        records: Dict[str, LegacyRecord] = {}

        for record in page:
            step.records_processed += 1
            self.transformer.register_child_positions(record)

            try:
                outcome = self.transformer.transform(record)
            except (MissingReferenceError, RecordValidationError) as e:
                step.records_skipped += 1
                step.add_issue(record.source_id, RecordStatus.SKIPPED, str(e), type(e).__name__)
                logger.warning(f"Skipped {entity}:{record.source_id}: {e}")
                continue

            if isinstance(outcome, TransformSkip):
                step.records_skipped += 1
                step.records_excluded += 1
                step.add_issue(record.source_id, RecordStatus.SKIPPED, outcome.reason, "TransformSkip")
                logger.info(f"Skipped {entity}:{record.source_id}: {outcome.reason}")
                continue

            rows.append(outcome)
            records[record.source_id] = record

        result = self.writer.write(schema, rows)
        self._tally(step, result)
        self._write_links(result, records, step)

    def _tally(self, step: MigrationStep, result: WriteResult) -> None:
        step.records_migrated += result.inserted
        step.records_updated += result.updated
        step.records_skipped += result.skipped
        step.records_already_migrated += result.skipped
        step.records_failed += result.failed
        for failure in result.failures:
            step.failed_batches.append(failure)
            for source_id in failure.get("source_ids", []):
                step.add_issue(source_id, RecordStatus.FAILED, failure["error"], "DestinationWriteError")

    def _write_links(self, result: WriteResult, records: Dict[str, LegacyRecord], step: MigrationStep) -> None:
        """Write join-table rows for the records that now have destination ids."""
        by_table: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        conflicts: Dict[str, str] = {}
        for source_id, record in records.items():
            destination_id = result.destination_ids.get(source_id)
            if destination_id is None:
                continue
            for link, row in self.transformer.links(record, destination_id):
                by_table[link.table].append(row)
                conflicts[link.table] = link.on_conflict

        for table, rows in by_table.items():
            link_result = self.writer.write_links(table, rows, conflicts[table])
            step.links_written += link_result.inserted
            step.failed_batches.extend({"table": table, **f} for f in link_result.failures)

    def _check_skip_rate(self, step: MigrationStep) -> None:
        threshold = self.config.max_skip_rate
        if threshold is None or step.records_processed < self.config.skip_rate_min_records:
            return
        if step.skip_rate > threshold:
            raise SkipRateExceededError(
                step.entity,
                step.unexpected_skips,
                step.records_processed,
                threshold,
            )

    def _preload(self, entity: str) -> None:
        """Rebuild mappings for an entity type from the destination, once per run."""
        if entity in self._preloaded:
            return
        schema = self.registry.get(entity)
        try:
            self.retry.call(
                lambda: self.mapper.preload(
                    entity, schema.table, self.store, schema.natural_key, schema.primary_key
                ),
                description=f"preload {schema.table}",
            )
        except TransientIOError as e:
            raise DestinationUnavailableError(f"preload {schema.table}: {e}") from e
        self._preloaded.add(entity)

    def _register_parent_positions(self, entity: str) -> None:
        """Read child lists of parents that were not migrated in this run."""
        if self.registry.get(entity).ordering is None:
            return
        for parent in self.registry.schemas.values():
            if entity not in parent.child_lists.values() or parent.name in self._migrated_in_run:
                continue
            logger.info(f"Reading {parent.name} child lists for {entity} positions")
            for page in self.extractor.pages(parent.name, self.config.page_size):
                for record in page:
                    self.transformer.register_child_positions(record)

    def _fetch_missing_reference(self, entity_type: str, source_id: str) -> Optional[Any]:
        """
        Create fallback for the mapper: fetch a missing parent from the legacy
        API, transform it and write it.

        Returns:
            The new destination id, or None if the parent cannot be migrated
        """
        key = (entity_type, source_id)
        if key in self._fetching:
            return None
        self._fetching.add(key)
        try:
            record = self.extractor.get(entity_type, source_id)
            if record is None:
                logger.warning(f"Referenced {entity_type}:{source_id} does not exist in Bubble")
                return None

            try:
                outcome = self.transformer.transform(record)
            except (MissingReferenceError, RecordValidationError) as e:
                logger.warning(f"Could not migrate referenced {entity_type}:{source_id}: {e}")
                return None
            if isinstance(outcome, TransformSkip):
                return None

            result = self.writer.write(self.registry.get(entity_type), [outcome])
            destination_id = result.destination_ids.get(source_id)
            if destination_id is not None:
                self.run.metadata.setdefault("fetched_references", []).append(f"{entity_type}:{source_id}")
                logger.info(f"Fetched and migrated missing {entity_type}:{source_id}")
            return destination_id
        finally:
            self._fetching.discard(key)

    def _save_report(self) -> Optional[Path]:
        """Save the migration report."""
        logs_dir = Path(self.config.output_dir) / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        filepath = logs_dir / f"migration_report_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        with open(filepath, 'w') as f:
            json.dump(self.run.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")
        return filepath
