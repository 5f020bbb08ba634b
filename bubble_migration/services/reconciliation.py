"""Post-migration checks and repairs against the destination store."""

import logging
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from ..errors import DestinationUnavailableError, TransientIOError
from ..loaders.base import DestinationStore, eq, in_, not_null
from ..models.report import (
    CountComparison,
    DuplicateGroup,
    EntityReconciliation,
    OrderingViolation,
    OrphanFinding,
    ReconciliationReport,
)
from ..models.schema import EntitySchema, MissingReferencePolicy
from .retry import RetryPolicy
from .schema_registry import SchemaRegistry
from .validator import parse_datetime

logger = logging.getLogger(__name__)

# Keeps PostgREST "in" filters well under URL length limits
IN_CHUNK_SIZE = 100


def normalize_content(value: Any) -> str:
    """Case-insensitive, whitespace-collapsed form used for duplicate detection."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


def _id_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, int) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def _chunks(items: List[Any], size: int = IN_CHUNK_SIZE) -> Iterator[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ReconciliationChecks:
    """
    Detects and repairs data-quality defects in the destination store.

    Detection never writes. Every repair is a separate call so destructive
    steps are always explicit:
    - orphans: rows whose foreign key points at a missing parent
    - duplicates: rows under one parent with the same normalized content
    - ordering: groups whose order numbers are not exactly 1..n
    - counts: legacy record count against migrated rows
    """

    def __init__(
        self,
        store: DestinationStore,
        registry: SchemaRegistry,
        dry_run: bool = False,
        retry: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the checks.

        Args:
            store: Destination store
            registry: Entity schemas (tables, foreign keys, ordering groups)
            dry_run: If True, repairs only log what they would change
            retry: Retry policy for transient store errors
        """
        self.store = store
        self.registry = registry
        self.dry_run = dry_run
        self.retry = retry or RetryPolicy()

    def _call(self, func, description: str):
        try:
            return self.retry.call(func, description)
        except TransientIOError as e:
            raise DestinationUnavailableError(f"{description}: {e}") from e

    def _select(self, table: str, **kwargs) -> List[Dict[str, Any]]:
        return self._call(lambda: self.store.select(table, **kwargs), f"select {table}")

    def _count(self, table: str, filters=None) -> int:
        return self._call(lambda: self.store.count(table, filters), f"count {table}")

    def _update(self, table: str, values: Dict[str, Any], filters) -> List[Dict[str, Any]]:
        return self._call(lambda: self.store.update(table, values, filters), f"update {table}")

    def _delete(self, table: str, filters) -> List[Dict[str, Any]]:
        return self._call(lambda: self.store.delete(table, filters), f"delete {table}")

    def _upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> List[Dict[str, Any]]:
        return self._call(lambda: self.store.upsert(table, rows, on_conflict=on_conflict), f"upsert {table}")

    # Orphans

    def find_orphans(self, entity: str) -> List[OrphanFinding]:
        """
        Find rows with a non-null foreign key that references no existing row.

        Every foreign key in the entity's schema is checked.
        """
        schema = self.registry.get(entity)
        if not schema.foreign_keys:
            return []

        columns = [schema.primary_key, schema.natural_key] + [fk.target for fk in schema.foreign_keys]
        rows = self._select(schema.table, columns=",".join(dict.fromkeys(columns)), order_by=schema.primary_key)

        parent_ids: Dict[str, Set[Any]] = {}
        findings = []
        for fk in schema.foreign_keys:
            if fk.entity not in parent_ids:
                parent_ids[fk.entity] = self._existing_ids(fk.entity)
            existing = parent_ids[fk.entity]
            for row in rows:
                value = row.get(fk.target)
                if value is not None and value not in existing:
                    findings.append(OrphanFinding(
                        entity=entity,
                        row_id=row[schema.primary_key],
                        column=fk.target,
                        missing_id=value,
                        source_id=row.get(schema.natural_key),
                    ))

        if findings:
            logger.warning(f"{entity}: {len({f.row_id for f in findings})} orphaned rows")
        return findings

    def delete_orphans(self, entity: str, orphans: List[OrphanFinding]) -> int:
        """
        Delete orphaned rows together with everything that depends on them.

        Dependents go first, deepest first: an orphaned question's answers,
        then its choices (and their answers), then the question.

        Returns:
            Number of orphaned rows deleted from the entity's own table
        """
        schema = self.registry.get(entity)
        row_ids = list(dict.fromkeys(o.row_id for o in orphans))
        if not row_ids:
            return 0

        if self.dry_run:
            logger.info(f"[dry run] would delete {len(row_ids)} orphaned {entity} rows and their dependents")
            return 0

        deleted: Dict[str, int] = defaultdict(int)
        self._delete_cascade(schema, row_ids, deleted)
        for table, count in deleted.items():
            logger.info(f"Deleted {count} rows from {table} while removing orphaned {entity} rows")
        return deleted.get(schema.table, 0)

    def _delete_cascade(self, schema: EntitySchema, ids: List[Any], deleted: Dict[str, int]) -> None:
        if not ids:
            return

        for dependent in self.registry.dependents_of(schema.name):
            for fk in dependent.foreign_keys_to(schema.name):
                for chunk in _chunks(ids):
                    if fk.on_missing == MissingReferencePolicy.NULL:
                        self._update(dependent.table, {fk.target: None}, [in_(fk.target, chunk)])
                        continue
                    rows = self._select(
                        dependent.table,
                        columns=dependent.primary_key,
                        filters=[in_(fk.target, chunk)],
                        order_by=dependent.primary_key,
                    )
                    self._delete_cascade(dependent, [r[dependent.primary_key] for r in rows], deleted)

        for owner in self.registry.schemas.values():
            for link in owner.links:
                for chunk in _chunks(ids):
                    if link.entity == schema.name:
                        removed = self._delete(link.table, [in_(link.target_column, chunk)])
                        deleted[link.table] += len(removed)
                    if owner.name == schema.name:
                        removed = self._delete(link.table, [in_(link.owner_column, chunk)])
                        deleted[link.table] += len(removed)

        for chunk in _chunks(ids):
            removed = self._delete(schema.table, [in_(schema.primary_key, chunk)])
            deleted[schema.table] += len(removed)

    def _existing_ids(self, entity: str) -> Set[Any]:
        schema = self.registry.get(entity)
        rows = self._select(schema.table, columns=schema.primary_key, order_by=schema.primary_key)
        return {row[schema.primary_key] for row in rows}

    # Duplicates

    def find_duplicates(self, entity: str) -> List[DuplicateGroup]:
        """
        Group rows under the same parent by normalized content.

        The oldest row (creation timestamp, then id) is marked as the one to keep.
        Entities without a content column have no duplicate check.
        """
        schema = self.registry.get(entity)
        if not schema.content_column:
            return []

        parent_column = schema.ordering.parent_column if schema.ordering else None
        columns = [schema.primary_key, schema.content_column, schema.created_column]
        if parent_column:
            columns.append(parent_column)
        rows = self._select(schema.table, columns=",".join(columns), order_by=schema.primary_key)

        groups: Dict[Tuple[Any, str], List[Dict[str, Any]]] = defaultdict(list)
        for row in rows:
            content = normalize_content(row.get(schema.content_column))
            if not content:
                continue
            parent = row.get(parent_column) if parent_column else None
            groups[(parent, content)].append(row)

        duplicates = []
        for (parent, content), members in groups.items():
            if len(members) < 2:
                continue
            members = sorted(members, key=lambda r: self._age_key(schema, r))
            duplicates.append(DuplicateGroup(
                entity=entity,
                parent_id=parent,
                content=content,
                keep_id=members[0][schema.primary_key],
                duplicate_ids=[m[schema.primary_key] for m in members[1:]],
            ))

        duplicates.sort(key=lambda g: (_id_key(g.parent_id), g.content))
        if duplicates:
            logger.warning(
                f"{entity}: {sum(len(g.duplicate_ids) for g in duplicates)} duplicate rows "
                f"in {len(duplicates)} groups"
            )
        return duplicates

    def delete_duplicates(self, entity: str, groups: List[DuplicateGroup]) -> int:
        """
        Delete duplicate rows, keeping the oldest row of each group.

        Foreign keys and join-table rows that point at a duplicate are moved
        to the kept row before the duplicate is deleted.

        Returns:
            Number of rows deleted
        """
        schema = self.registry.get(entity)
        total = sum(len(g.duplicate_ids) for g in groups)
        if not total:
            return 0

        if self.dry_run:
            logger.info(f"[dry run] would delete {total} duplicate {entity} rows")
            return 0

        deleted = 0
        for group in groups:
            dup_ids = list(group.duplicate_ids)
            for dependent in self.registry.dependents_of(entity):
                for fk in dependent.foreign_keys_to(entity):
                    moved = self._update(
                        dependent.table, {fk.target: group.keep_id}, [in_(fk.target, dup_ids)]
                    )
                    if moved:
                        logger.info(
                            f"Repointed {len(moved)} {dependent.table}.{fk.target} "
                            f"from duplicates to {group.keep_id}"
                        )

            for owner in self.registry.schemas.values():
                for link in owner.links:
                    if link.entity == entity:
                        self._move_links(link.table, link.target_column, link.on_conflict, dup_ids, group.keep_id)
                    if owner.name == entity:
                        self._move_links(link.table, link.owner_column, link.on_conflict, dup_ids, group.keep_id)

            removed = self._delete(schema.table, [in_(schema.primary_key, dup_ids)])
            deleted += len(removed)

        logger.info(f"Deleted {deleted} duplicate {entity} rows")
        return deleted

    def _move_links(self, table: str, column: str, on_conflict: str, from_ids: List[Any], to_id: Any) -> None:
        rows = self._select(table, filters=[in_(column, from_ids)], order_by=on_conflict)
        if not rows:
            return
        key_columns = on_conflict.split(",")
        # Several duplicates may link the same counterpart; first one wins
        moved: Dict[Tuple, Dict[str, Any]] = {}
        for row in rows:
            new_row = {k: v for k, v in row.items() if k != "id"}
            new_row[column] = to_id
            moved.setdefault(tuple(new_row.get(c) for c in key_columns), new_row)
        self._upsert(table, list(moved.values()), on_conflict=on_conflict)
        self._delete(table, [in_(column, from_ids)])

    # Ordering

    def find_ordering_violations(self, entity: str) -> List[OrderingViolation]:
        """
        Find ordering groups whose order numbers are not exactly 1..n.

        Nulls, repeated values, gaps and a start other than 1 all count. Each
        violation carries the planned repair: members sorted by (current order
        number with nulls last, creation timestamp, id) and numbered 1..n.
        """
        schema = self.registry.get(entity)
        if not schema.ordering:
            return []

        ordering = schema.ordering
        columns = [schema.primary_key, ordering.column, schema.created_column]
        if ordering.parent_column:
            columns.append(ordering.parent_column)
        rows = self._select(schema.table, columns=",".join(columns), order_by=schema.primary_key)

        groups: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
        for row in rows:
            parent = row.get(ordering.parent_column) if ordering.parent_column else None
            groups[parent].append(row)

        violations = []
        for parent in sorted(groups, key=_id_key):
            members = groups[parent]
            values = [m.get(ordering.column) for m in members]
            present = [v for v in values if v is not None]
            expected = set(range(1, len(members) + 1))

            null_count = len(values) - len(present)
            repeated = sorted({v for v in present if present.count(v) > 1})
            if not null_count and not repeated and set(present) == expected:
                continue

            ranked = sorted(members, key=lambda r: (
                r.get(ordering.column) is None,
                r.get(ordering.column) or 0,
            ) + self._age_key(schema, r))

            violations.append(OrderingViolation(
                entity=entity,
                parent_id=parent,
                size=len(members),
                null_count=null_count,
                duplicate_values=repeated,
                missing_values=sorted(expected - set(present)),
                current_values={m[schema.primary_key]: m.get(ordering.column) for m in members},
                assignments={r[schema.primary_key]: i for i, r in enumerate(ranked, start=1)},
            ))

        if violations:
            logger.warning(f"{entity}: {len(violations)} ordering groups need repair")
        return violations

    def repair_ordering(
        self,
        entity: str,
        violations: Optional[List[OrderingViolation]] = None,
    ) -> Tuple[int, int]:
        """
        Renumber every violating group 1..n, persisting only changed rows.

        Returns:
            (groups repaired, rows updated)
        """
        schema = self.registry.get(entity)
        if violations is None:
            violations = self.find_ordering_violations(entity)
        if not violations:
            return 0, 0

        column = schema.ordering.column
        if self.dry_run:
            changes = sum(len(v.changes) for v in violations)
            logger.info(f"[dry run] would renumber {changes} {entity} rows in {len(violations)} groups")
            return 0, 0

        updated = 0
        for violation in violations:
            for row_id, position in violation.changes.items():
                self._update(schema.table, {column: position}, [eq(schema.primary_key, row_id)])
                updated += 1
        logger.info(f"Renumbered {updated} {entity} rows in {len(violations)} groups")
        return len(violations), updated

    def _age_key(self, schema: EntitySchema, row: Dict[str, Any]) -> Tuple:
        created = parse_datetime(row.get(schema.created_column))
        return (created is None, created, _id_key(row[schema.primary_key]))

    # Counts

    def compare_counts(self, entity: str, pager) -> CountComparison:
        """Legacy record count against destination rows that carry a legacy id."""
        schema = self.registry.get(entity)
        source_count = pager.count(entity)
        destination_count = self._count(schema.table, [not_null(schema.natural_key)])
        comparison = CountComparison(entity, source_count, destination_count)
        if not comparison.matches:
            logger.warning(
                f"{entity}: legacy has {source_count} records, "
                f"{schema.table} has {destination_count} migrated rows"
            )
        return comparison

    def table_counts(self, entities: Optional[List[str]] = None) -> Dict[str, int]:
        """Row count per entity table."""
        names = self.registry.migration_order(entities)
        return {name: self._count(self.registry.get(name).table) for name in names}

    # Runs

    def reconcile(
        self,
        entity: str,
        repair: bool = False,
        delete_orphans: bool = False,
        delete_duplicates: bool = False,
        pager=None,
    ) -> EntityReconciliation:
        """
        Run every check for one entity type, with the requested repairs.

        Args:
            entity: Entity type
            repair: Renumber broken ordering groups
            delete_orphans: Delete orphaned rows and their dependents
            delete_duplicates: Delete duplicates, keeping the oldest row
            pager: Legacy pager; when given, counts are compared

        Returns:
            EntityReconciliation with findings and repair tallies
        """
        schema = self.registry.get(entity)
        logger.info(f"Reconciling {entity} ({schema.table})")
        result = EntityReconciliation(entity=entity, table=schema.table)
        result.row_count = self._count(schema.table)

        result.orphans = self.find_orphans(entity)
        if delete_orphans and result.orphans:
            result.orphans_deleted = self.delete_orphans(entity, result.orphans)

        result.duplicates = self.find_duplicates(entity)
        if delete_duplicates and result.duplicates:
            result.duplicates_deleted = self.delete_duplicates(entity, result.duplicates)

        # Deletions change group membership, so look at ordering last
        result.ordering_violations = self.find_ordering_violations(entity)
        if repair and result.ordering_violations:
            result.groups_repaired, result.rows_reordered = self.repair_ordering(
                entity, result.ordering_violations
            )

        if pager is not None:
            result.counts = self.compare_counts(entity, pager)

        return result

    def report(self, entities: Optional[List[str]] = None, **kwargs) -> ReconciliationReport:
        """Reconcile entity types in dependency order and collect the results."""
        report = ReconciliationReport()
        for entity in self.registry.migration_order(entities):
            report.entities.append(self.reconcile(entity, **kwargs))
        return report
