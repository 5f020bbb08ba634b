"""Reconciliation report models. Produced fresh on each run, never persisted."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime


@dataclass
class OrphanFinding:
    """A destination row whose foreign key points at a missing parent."""
    entity: str
    row_id: Any
    column: str
    missing_id: Any
    source_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "row_id": self.row_id,
            "column": self.column,
            "missing_id": self.missing_id,
            "source_id": self.source_id,
        }


@dataclass
class DuplicateGroup:
    """Rows under one parent whose normalized content is the same."""
    entity: str
    parent_id: Any
    content: str
    keep_id: Any
    duplicate_ids: List[Any] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.duplicate_ids) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "parent_id": self.parent_id,
            "content": self.content,
            "keep_id": self.keep_id,
            "duplicate_ids": self.duplicate_ids,
        }


@dataclass
class OrderingViolation:
    """An ordering group whose positions are not exactly 1..n."""
    entity: str
    parent_id: Any
    size: int
    null_count: int = 0
    duplicate_values: List[int] = field(default_factory=list)
    missing_values: List[int] = field(default_factory=list)
    # row id -> order number before repair
    current_values: Dict[Any, Optional[int]] = field(default_factory=dict)
    # row id -> planned order number 1..n
    assignments: Dict[Any, int] = field(default_factory=dict)

    @property
    def changes(self) -> Dict[Any, int]:
        """Planned assignments that differ from the current value."""
        return {
            row_id: value for row_id, value in self.assignments.items()
            if self.current_values.get(row_id) != value
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "parent_id": self.parent_id,
            "size": self.size,
            "null_count": self.null_count,
            "duplicate_values": self.duplicate_values,
            "missing_values": self.missing_values,
            "assignments": {str(k): v for k, v in self.assignments.items()},
        }


@dataclass
class CountComparison:
    """Legacy record count against migrated destination rows."""
    entity: str
    source_count: int
    destination_count: int

    @property
    def difference(self) -> int:
        return self.source_count - self.destination_count

    @property
    def matches(self) -> bool:
        return self.difference == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "source_count": self.source_count,
            "destination_count": self.destination_count,
            "difference": self.difference,
        }


@dataclass
class EntityReconciliation:
    """Findings (and repairs, if any) for one entity type."""
    entity: str
    table: str
    row_count: int = 0
    orphans: List[OrphanFinding] = field(default_factory=list)
    duplicates: List[DuplicateGroup] = field(default_factory=list)
    ordering_violations: List[OrderingViolation] = field(default_factory=list)
    counts: Optional[CountComparison] = None

    orphans_deleted: int = 0
    duplicates_deleted: int = 0
    rows_reordered: int = 0
    groups_repaired: int = 0

    @property
    def duplicate_rows(self) -> int:
        return sum(len(g.duplicate_ids) for g in self.duplicates)

    @property
    def unresolved_orphans(self) -> int:
        return max(len({o.row_id for o in self.orphans}) - self.orphans_deleted, 0)

    @property
    def unresolved_duplicates(self) -> int:
        return max(self.duplicate_rows - self.duplicates_deleted, 0)

    @property
    def unresolved_ordering(self) -> int:
        return max(len(self.ordering_violations) - self.groups_repaired, 0)

    @property
    def has_unresolved(self) -> bool:
        return bool(self.unresolved_orphans or self.unresolved_duplicates or self.unresolved_ordering)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity": self.entity,
            "table": self.table,
            "row_count": self.row_count,
            "orphans": [o.to_dict() for o in self.orphans],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "ordering_violations": [v.to_dict() for v in self.ordering_violations],
            "counts": self.counts.to_dict() if self.counts else None,
            "summary": {
                "orphan_rows": len({o.row_id for o in self.orphans}),
                "duplicate_rows": self.duplicate_rows,
                "ordering_violations": len(self.ordering_violations),
                "orphans_deleted": self.orphans_deleted,
                "duplicates_deleted": self.duplicates_deleted,
                "rows_reordered": self.rows_reordered,
                "groups_repaired": self.groups_repaired,
                "unresolved": self.has_unresolved,
            },
        }


@dataclass
class ReconciliationReport:
    """Reconciliation results across entity types."""
    generated_at: datetime = field(default_factory=datetime.utcnow)
    entities: List[EntityReconciliation] = field(default_factory=list)

    @property
    def has_unresolved(self) -> bool:
        return any(e.has_unresolved for e in self.entities)

    def get(self, entity: str) -> Optional[EntityReconciliation]:
        for result in self.entities:
            if result.entity == entity:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "has_unresolved": self.has_unresolved,
            "entities": [e.to_dict() for e in self.entities],
        }
