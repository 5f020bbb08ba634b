"""Validation of legacy records at the transformer boundary."""

import logging
from typing import Any, List, Optional
from datetime import datetime, timezone

from dateutil import parser as date_parser

from ..errors import RecordValidationError
from ..models.schema import (
    FieldType,
    EntitySchema,
    FieldDefinition,
)
from ..models.record import LegacyRecord

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"true", "yes", "1", "y"}
FALSE_STRINGS = {"false", "no", "0", "n", ""}


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a legacy timestamp (ISO string or epoch milliseconds) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        dt = date_parser.parse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_value(value: Any, field_type: FieldType) -> Any:
    """
    Convert a legacy value to the destination representation.

    Raises:
        ValueError, TypeError: the value cannot be represented as ``field_type``
    """
    if value is None:
        return None

    if field_type == FieldType.STRING:
        if isinstance(value, (dict, list)):
            raise TypeError(f"expected text, got {type(value).__name__}")
        return value if isinstance(value, str) else str(value)

    if field_type == FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        number = float(value)
        if not number.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        return int(number)

    if field_type == FieldType.DECIMAL:
        if isinstance(value, bool):
            raise TypeError("expected a number, got a boolean")
        return float(value)

    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError(f"{value!r} is not a boolean")

    if field_type == FieldType.DATETIME:
        return parse_datetime(value).isoformat()

    if field_type == FieldType.LIST:
        return value if isinstance(value, list) else [value]

    if field_type == FieldType.OBJECT and not isinstance(value, dict):
        raise TypeError(f"expected an object, got {type(value).__name__}")

    return value


class RecordValidator:
    """
    Validator for legacy records before transformation.

    Supports:
    - Required field validation (fields without a default)
    - Type validation (the value must coerce to the declared type)
    - Reference validation (foreign key values must be legacy ids)
    """

    def validate_record(self, record: LegacyRecord, schema: EntitySchema) -> List[str]:
        """
        Validate a legacy record against its entity schema.

        Args:
            record: The legacy record
            schema: The entity schema it maps onto

        Returns:
            List of problems; empty when the record can be transformed
        """
        problems = []

        if not record.source_id:
            problems.append("record has no _id")

        for field_def in schema.fields:
            problem = self._validate_field(record, field_def)
            if problem:
                problems.append(problem)

        for fk in schema.foreign_keys:
            value = record.get_field(fk.source)
            if value is not None and not isinstance(value, str):
                problems.append(
                    f"'{fk.source}' should reference a {fk.entity} id, got {type(value).__name__}"
                )

        for link in schema.links:
            value = record.get_field(link.source)
            if value is not None and not isinstance(value, (list, str)):
                problems.append(f"'{link.source}' should be a list of {link.entity} ids")

        return problems

    def _validate_field(self, record: LegacyRecord, field_def: FieldDefinition) -> Optional[str]:
        """Validate a single field."""
        value = record.get_field(field_def.source)

        if value is None or value == "":
            if field_def.required and field_def.default is None:
                return f"required field '{field_def.source}' is missing"
            return None

        try:
            coerce_value(value, field_def.type)
        except (ValueError, TypeError, OverflowError) as e:
            return f"'{field_def.source}' is not a valid {field_def.type.value}: {e}"
        return None

    def ensure_valid(self, record: LegacyRecord, schema: EntitySchema) -> None:
        """Raise ``RecordValidationError`` when the record has problems."""
        problems = self.validate_record(record, schema)
        if problems:
            raise RecordValidationError(record.entity_type, record.source_id, problems)

    def is_valid(self, record: LegacyRecord, schema: EntitySchema) -> bool:
        """Quick check if a record is valid."""
        return not self.validate_record(record, schema)
