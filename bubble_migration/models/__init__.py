"""Data models for the migration application."""

from .schema import (
    FieldType,
    MissingReferencePolicy,
    FieldDefinition,
    ForeignKey,
    OrderingSpec,
    LinkSpec,
    EntitySchema,
)
from .migration import (
    MigrationConfig,
    RetryConfig,
    MigrationRun,
    MigrationStep,
    MigrationStatus,
)
from .record import (
    LegacyRecord,
    DestinationRow,
    TransformSkip,
    RecordIssue,
    RecordStatus,
)
from .report import (
    OrphanFinding,
    DuplicateGroup,
    OrderingViolation,
    CountComparison,
    EntityReconciliation,
    ReconciliationReport,
)

__all__ = [
    "FieldType",
    "MissingReferencePolicy",
    "FieldDefinition",
    "ForeignKey",
    "OrderingSpec",
    "LinkSpec",
    "EntitySchema",
    "MigrationConfig",
    "RetryConfig",
    "MigrationRun",
    "MigrationStep",
    "MigrationStatus",
    "LegacyRecord",
    "DestinationRow",
    "TransformSkip",
    "RecordIssue",
    "RecordStatus",
    "OrphanFinding",
    "DuplicateGroup",
    "OrderingViolation",
    "CountComparison",
    "EntityReconciliation",
    "ReconciliationReport",
]
