"""Error taxonomy for migration and reconciliation runs.

Run-fatal errors abort the whole run (the CLI exits with status 2). Record-level
errors are recovered by the orchestrator: the record is skipped and logged.
"""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all migration errors."""

    fatal = False


class ConfigurationError(MigrationError):
    """Missing or invalid configuration."""

    fatal = True


class TransientIOError(MigrationError):
    """Network timeout, rate limit or 5xx response. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LegacyApiError(MigrationError):
    """Non-retryable error response from the legacy API."""

    fatal = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PaginationError(MigrationError):
    """A page could not be fetched, even after retrying the same cursor."""

    fatal = True

    def __init__(self, entity_type: str, cursor: int, message: str):
        super().__init__(f"{entity_type} at cursor {cursor}: {message}")
        self.entity_type = entity_type
        self.cursor = cursor


class DestinationUnavailableError(MigrationError):
    """The destination store cannot be reached."""

    fatal = True


class DestinationWriteError(MigrationError):
    """A write was rejected by the destination (constraint violation etc.)."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class MissingReferenceError(MigrationError):
    """A foreign key could not be resolved to a destination id."""

    def __init__(self, entity_type: str, source_id: str, field: Optional[str] = None):
        message = f"No {entity_type} mapped for source id {source_id}"
        if field:
            message += f" (field '{field}')"
        super().__init__(message)
        self.entity_type = entity_type
        self.source_id = source_id
        self.field = field


class MappingConflictError(MigrationError):
    """A source id was mapped to two different destination ids in one run."""

    def __init__(self, entity_type: str, source_id: str, existing: str, new: str):
        super().__init__(
            f"{entity_type}:{source_id} already mapped to {existing}, refusing {new}"
        )
        self.entity_type = entity_type
        self.source_id = source_id


class RecordValidationError(MigrationError):
    """A legacy record is malformed and has no safe default."""

    def __init__(self, entity_type: str, source_id: str, problems: List[str]):
        super().__init__(f"{entity_type}:{source_id} invalid: {'; '.join(problems)}")
        self.entity_type = entity_type
        self.source_id = source_id
        self.problems = problems


class SkipRateExceededError(MigrationError):
    """Too many records skipped; signals a systemic schema mismatch."""

    fatal = True

    def __init__(self, entity_type: str, skipped: int, processed: int, threshold: float):
        super().__init__(
            f"{entity_type}: skipped {skipped}/{processed} records, "
            f"above the configured skip rate of {threshold:.0%}"
        )
        self.entity_type = entity_type
        self.skipped = skipped
        self.processed = processed
