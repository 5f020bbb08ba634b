"""Batched, idempotent writes of destination rows."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from .base import DestinationStore, in_
from ..errors import DestinationUnavailableError, DestinationWriteError, TransientIOError
from ..models.record import DestinationRow
from ..models.schema import EntitySchema
from ..services.id_mapper import IdentifierMapper
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


def dry_run_id(entity_type: str, source_id: str) -> str:
    """Deterministic placeholder id handed out when writes are skipped."""
    return f"dry-run:{entity_type}:{source_id}"


@dataclass
class WriteResult:
    """Result of a write operation."""
    entity: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    destination_ids: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped + self.failed

    @property
    def failed_source_ids(self) -> List[str]:
        ids = []
        for failure in self.failures:
            ids.extend(failure.get("source_ids", []))
        return ids

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def merge(self, other: "WriteResult") -> None:
        """Add another result's tallies into this one."""
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.failures.extend(other.failures)
        self.destination_ids.update(other.destination_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": self.failures,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BatchedWriter:
    """
    Writes destination rows in fixed-size batches.

    Writes are upserts keyed on the legacy id column, so re-running after a
    partial failure never creates duplicates. Rows whose legacy id is already
    present count as skipped unless ``update_existing`` is set.

    A rejected batch is recorded with its legacy ids and later batches still
    run. Running out of retries against the store is fatal.
    """

    def __init__(
        self,
        store: DestinationStore,
        mapper: IdentifierMapper,
        retry: Optional[RetryPolicy] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        update_existing: bool = False,
    ):
        """
        Initialize the writer.

        Args:
            store: Destination store
            mapper: Identifier mapper that receives every written row's id
            retry: Retry policy for transient store errors
            batch_size: Rows per request
            dry_run: If True, read but never write; new rows get placeholder ids
            update_existing: If True, rows already migrated are updated
        """
        self.store = store
        self.mapper = mapper
        self.retry = retry or RetryPolicy()
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.update_existing = update_existing

    def _call(self, func, description: str):
        try:
            return self.retry.call(func, description)
        except TransientIOError as e:
            raise DestinationUnavailableError(f"{description}: {e}") from e

    def write(
        self,
        schema: EntitySchema,
        rows: List[DestinationRow],
        batch_size: Optional[int] = None,
    ) -> WriteResult:
        """
        Write rows for one entity type.

        Args:
            schema: Entity schema (table, natural key, primary key)
            rows: Transformed rows
            batch_size: Override of the writer's batch size

        Returns:
            WriteResult with inserted/updated/skipped/failed tallies

        Raises:
            DestinationUnavailableError: the store stayed unreachable
        """
        batch_size = batch_size or self.batch_size
        result = WriteResult(entity=schema.name)
        result.started_at = datetime.utcnow()

        for i in range(0, len(rows), batch_size):
            self._write_batch(schema, rows[i:i + batch_size], i // batch_size, result)

        result.completed_at = datetime.utcnow()
        return result

    def _write_batch(
        self,
        schema: EntitySchema,
        batch: List[DestinationRow],
        batch_index: int,
        result: WriteResult,
    ) -> None:
        table = schema.table
        keyed: Dict[str, DestinationRow] = {}
        for row in batch:
            if row.source_id in keyed:
                # Same legacy id twice in one batch; one upsert cannot touch a row twice
                result.skipped += 1
            else:
                keyed[row.source_id] = row

        existing: Dict[str, Any] = {}
        if keyed:
            found = self._call(
                lambda: self.store.select(
                    table,
                    columns=f"{schema.primary_key},{schema.natural_key}",
                    filters=[in_(schema.natural_key, list(keyed))],
                ),
                f"select existing {table}",
            )
            for stored in found:
                existing.setdefault(stored[schema.natural_key], stored[schema.primary_key])

        for source_id, destination_id in existing.items():
            self.mapper.record(schema.name, source_id, destination_id)
            result.destination_ids[source_id] = destination_id

        new_rows = [row for sid, row in keyed.items() if sid not in existing]
        existing_rows = [row for sid, row in keyed.items() if sid in existing]
        to_write = new_rows + existing_rows if self.update_existing else new_rows
        if not self.update_existing:
            result.skipped += len(existing_rows)

        if self.dry_run:
            for row in new_rows:
                placeholder = dry_run_id(schema.name, row.source_id)
                self.mapper.record(schema.name, row.source_id, placeholder)
                result.destination_ids[row.source_id] = placeholder
            result.inserted += len(new_rows)
            if self.update_existing:
                result.updated += len(existing_rows)
            logger.debug(f"[dry run] {table} batch {batch_index}: {len(new_rows)} new rows not written")
            return

        if not to_write:
            return

        payload = [row.payload() for row in to_write]
        try:
            stored_rows = self._call(
                lambda: self.store.upsert(table, payload, on_conflict=schema.natural_key),
                f"upsert {table} batch {batch_index}",
            )
        except DestinationWriteError as e:
            result.failed += len(to_write)
            result.failures.append({
                "batch": batch_index,
                "source_ids": [row.source_id for row in to_write],
                "error": str(e),
                "code": e.code,
            })
            logger.error(f"{table} batch {batch_index} rejected ({e.code}): {e}")
            return

        for stored in stored_rows:
            source_id = stored.get(schema.natural_key)
            if source_id is None:
                continue
            self.mapper.record(schema.name, source_id, stored[schema.primary_key])
            result.destination_ids[source_id] = stored[schema.primary_key]

        missing = [row.source_id for row in to_write if row.source_id not in result.destination_ids]
        if missing:
            found = self._call(
                lambda: self.store.select(
                    table,
                    columns=f"{schema.primary_key},{schema.natural_key}",
                    filters=[in_(schema.natural_key, missing)],
                ),
                f"select written {table}",
            )
            for stored in found:
                self.mapper.record(schema.name, stored[schema.natural_key], stored[schema.primary_key])
                result.destination_ids[stored[schema.natural_key]] = stored[schema.primary_key]

        result.inserted += len(new_rows)
        if self.update_existing:
            result.updated += len(existing_rows)
        logger.debug(f"{table} batch {batch_index}: {len(new_rows)} inserted, {len(existing_rows)} existing")

    def write_links(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str,
        batch_size: Optional[int] = None,
    ) -> WriteResult:
        """
        Upsert join-table rows in batches.

        Returns:
            WriteResult where ``inserted`` counts rows written
        """
        batch_size = batch_size or self.batch_size
        result = WriteResult(entity=table)
        result.started_at = datetime.utcnow()

        for i in range(0, len(rows), batch_size):
            batch = rows[i:i + batch_size]
            if self.dry_run:
                result.inserted += len(batch)
                continue
            try:
                self._call(
                    lambda: self.store.upsert(table, batch, on_conflict=on_conflict),
                    f"upsert {table} batch {i // batch_size}",
                )
                result.inserted += len(batch)
            except DestinationWriteError as e:
                result.failed += len(batch)
                result.failures.append({"batch": i // batch_size, "error": str(e), "code": e.code})
                logger.error(f"{table} link batch {i // batch_size} rejected ({e.code}): {e}")

        result.completed_at = datetime.utcnow()
        return result
