"""Service layer for the migration application."""

from .schema_registry import SchemaRegistry
from .retry import RetryPolicy
from .id_mapper import IdentifierMapper
from .validator import RecordValidator
from .transformer import RecordTransformer
from .reconciliation import ReconciliationChecks

__all__ = [
    "SchemaRegistry",
    "RetryPolicy",
    "IdentifierMapper",
    "RecordValidator",
    "RecordTransformer",
    "ReconciliationChecks",
]
