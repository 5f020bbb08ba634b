"""Record models for migration data."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime


class RecordStatus(str, Enum):
    """Outcome of a record within a migration run."""
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class LegacyRecord:
    """A record fetched from the legacy API. Never mutated after fetch."""
    entity_type: str
    source_id: str
    data: Dict[str, Any]
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a field value by dot-notation path (e.g., 'authentication.email.email')."""
        if path in self.data:
            value = self.data[path]
            return default if value is None else value

        value: Any = self.data
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return default
            if value is None:
                return default
        return value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
        }


@dataclass
class DestinationRow:
    """A row shaped for one destination table."""
    entity_type: str
    table: str
    source_id: str
    values: Dict[str, Any] = field(default_factory=dict)
    source_id_column: str = "bubble_id"

    def payload(self) -> Dict[str, Any]:
        """Column/value mapping sent to the destination store."""
        payload = dict(self.values)
        payload[self.source_id_column] = self.source_id
        return payload

    def to_json(self) -> str:
        """Canonical JSON encoding, stable across calls."""
        return json.dumps(self.payload(), sort_keys=True, separators=(",", ":"), default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "table": self.table,
            "source_id": self.source_id,
            "values": self.values,
        }


@dataclass(frozen=True)
class TransformSkip:
    """A record deliberately left out of the migration."""
    entity_type: str
    source_id: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "reason": self.reason,
        }


@dataclass
class RecordIssue:
    """A skipped or failed record, kept for the run's detail log."""
    entity_type: str
    source_id: str
    status: RecordStatus
    reason: str
    error_type: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "status": self.status.value,
            "reason": self.reason,
            "error_type": self.error_type,
            "occurred_at": self.occurred_at.isoformat(),
        }
