"""Transformation of legacy records into destination rows."""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from ..errors import MissingReferenceError
from ..models.migration import MigrationConfig
from ..models.record import DestinationRow, LegacyRecord, TransformSkip
from ..models.schema import EntitySchema, FieldType, ForeignKey, LinkSpec, MissingReferencePolicy
from .id_mapper import CreateFallback, IdentifierMapper
from .schema_registry import SchemaRegistry
from .validator import RecordValidator, coerce_value

logger = logging.getLogger(__name__)

# Ordering override key for groups without a parent column (e.g. sections)
ROOT_GROUP = "*"


class RecordTransformer:
    """
    Transforms legacy records into destination rows.

    Supports:
    - Exclusions and known duplicates from configuration (returned as skips)
    - Field renames, type coercion and defaults from the entity schema
    - Foreign keys resolved through the identifier mapper
    - Order numbers defaulted from the parent's child list
    - Configured literal ordering sequences
    - Join-table link rows for list-of-reference fields

    The output depends only on the record, the configuration, the registered
    child positions and the mapper state, so transforming the same record twice
    gives identical rows.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        mapper: IdentifierMapper,
        config: Optional[MigrationConfig] = None,
        validator: Optional[RecordValidator] = None,
        reference_fallback: Optional[CreateFallback] = None,
    ):
        """
        Initialize the transformer.

        Args:
            registry: Entity schemas
            mapper: Identifier mapper owned by the current run
            config: Exclusions, known duplicates and ordering overrides
            validator: Boundary validator; a default one is created if omitted
            reference_fallback: Passed to ``mapper.resolve`` as the create
                fallback for unresolved foreign keys
        """
        self.registry = registry
        self.mapper = mapper
        self.config = config or MigrationConfig()
        self.validator = validator or RecordValidator()
        self.reference_fallback = reference_fallback
        self._positions: Dict[Tuple[str, str], int] = {}

    def register_child_positions(self, record: LegacyRecord) -> int:
        """
        Remember where each child sits in this parent's child lists.

        Parents migrate before their children, so positions are known by the
        time a child without an order number is transformed. The first parent
        to list a child wins.

        Returns:
            Number of positions registered
        """
        schema = self.registry.get(record.entity_type)
        registered = 0
        for list_field, child_entity in schema.child_lists.items():
            child_ids = record.get_field(list_field) or []
            if isinstance(child_ids, str):
                child_ids = [child_ids]
            for index, child_id in enumerate(child_ids):
                key = (child_entity, child_id)
                if key not in self._positions:
                    self._positions[key] = index
                    registered += 1
        return registered

    def child_position(self, entity_type: str, source_id: str) -> Optional[int]:
        """Zero-based position of a child in its parent's list, if known."""
        return self._positions.get((entity_type, source_id))

    def transform(self, record: LegacyRecord) -> Union[DestinationRow, TransformSkip]:
        """
        Transform one legacy record.

        Args:
            record: The legacy record

        Returns:
            A destination row, or a TransformSkip for excluded records

        Raises:
            RecordValidationError: the record is malformed
            MissingReferenceError: a required foreign key does not resolve
        """
        schema = self.registry.get(record.entity_type)

        skip = self._check_exclusions(record)
        if skip is not None:
            return skip

        self.validator.ensure_valid(record, schema)

        values: Dict[str, Any] = {}
        for field_def in schema.fields:
            value = record.get_field(field_def.source)
            if value is None or value == "":
                value = field_def.default
            values[field_def.target] = coerce_value(value, field_def.type)

        for fk in schema.foreign_keys:
            values[fk.target] = self._resolve_foreign_key(record, fk)

        if schema.ordering:
            values[schema.ordering.column] = self._order_number(record, schema)

        return DestinationRow(
            entity_type=record.entity_type,
            table=schema.table,
            source_id=record.source_id,
            values=values,
            source_id_column=schema.natural_key,
        )

    def links(self, record: LegacyRecord, owner_id: Any) -> List[Tuple[LinkSpec, Dict[str, Any]]]:
        """
        Join-table rows for the record's list-of-reference fields.

        Targets that are not mapped are dropped and logged; a repeated target
        keeps its first position.
        """
        schema = self.registry.get(record.entity_type)
        result = []
        for link in schema.links:
            target_ids = record.get_field(link.source) or []
            if isinstance(target_ids, str):
                target_ids = [target_ids]

            seen = set()
            for index, target_source_id in enumerate(target_ids):
                target_id = self.mapper.get(link.entity, target_source_id)
                if target_id is None:
                    logger.warning(
                        f"{record.entity_type}:{record.source_id} links to unknown "
                        f"{link.entity}:{target_source_id} via '{link.source}', dropped"
                    )
                    continue
                if target_id in seen:
                    continue
                seen.add(target_id)

                row = {link.owner_column: owner_id, link.target_column: target_id}
                if link.order_column:
                    row[link.order_column] = index + 1
                result.append((link, row))
        return result

    def alias_known_duplicates(self, entity_type: str) -> int:
        """
        Map configured duplicates onto their canonical record's destination id.

        Dependents referencing a skipped duplicate then resolve to the kept row.

        Returns:
            Number of aliases recorded
        """
        aliased = 0
        for duplicate_id, canonical_id in self.config.known_duplicates.get(entity_type, {}).items():
            destination_id = self.mapper.get(entity_type, canonical_id)
            if destination_id is None:
                logger.warning(
                    f"Known duplicate {entity_type}:{duplicate_id} points at "
                    f"{canonical_id}, which was not migrated"
                )
                continue
            self.mapper.record(entity_type, duplicate_id, destination_id)
            aliased += 1
        return aliased

    def _check_exclusions(self, record: LegacyRecord) -> Optional[TransformSkip]:
        """Return a skip if configuration excludes this record."""
        for rule in self.config.exclusions.get(record.entity_type, []):
            reason = rule.get("reason", "excluded by configuration")
            if "source_id" in rule and rule["source_id"] == record.source_id:
                return TransformSkip(record.entity_type, record.source_id, reason)
            if "field" in rule:
                value = record.get_field(rule["field"])
                if "equals" in rule and value == rule["equals"]:
                    return TransformSkip(record.entity_type, record.source_id, reason)
                if "in" in rule and value in rule["in"]:
                    return TransformSkip(record.entity_type, record.source_id, reason)
                if rule.get("missing") and value in (None, "", []):
                    return TransformSkip(record.entity_type, record.source_id, reason)

        canonical = self.config.known_duplicates.get(record.entity_type, {}).get(record.source_id)
        if canonical:
            return TransformSkip(
                record.entity_type, record.source_id, f"known duplicate of {canonical}"
            )
        return None

    def _resolve_foreign_key(self, record: LegacyRecord, fk: ForeignKey) -> Optional[Any]:
        """Resolve one foreign key; an empty legacy value is written as null."""
        source_id = record.get_field(fk.source)
        if source_id is None or source_id == "":
            return None

        try:
            return self.mapper.resolve(fk.entity, source_id, create=self.reference_fallback)
        except MissingReferenceError:
            if fk.on_missing == MissingReferencePolicy.NULL:
                logger.warning(
                    f"{record.entity_type}:{record.source_id} '{fk.source}' references "
                    f"unknown {fk.entity}:{source_id}, writing null"
                )
                return None
            raise MissingReferenceError(fk.entity, source_id, field=fk.source)

    def _order_number(self, record: LegacyRecord, schema: EntitySchema) -> Optional[int]:
        """Configured override, then the legacy order field, then the child-list position."""
        override = self._override_position(record, schema)
        if override is not None:
            return override

        if schema.ordering.source:
            raw = record.get_field(schema.ordering.source)
            if raw is not None and raw != "":
                try:
                    return coerce_value(raw, FieldType.INTEGER)
                except (ValueError, TypeError):
                    logger.warning(
                        f"{record.entity_type}:{record.source_id} has unusable "
                        f"'{schema.ordering.source}' value {raw!r}"
                    )

        position = self.child_position(record.entity_type, record.source_id)
        if position is not None:
            return position + 1
        # Left null; reconciliation repairs the group
        return None

    def _override_position(self, record: LegacyRecord, schema: EntitySchema) -> Optional[int]:
        overrides = self.config.ordering_overrides.get(record.entity_type)
        if not overrides:
            return None

        parent_key = ROOT_GROUP
        if schema.ordering.parent_column:
            parent_fk = next(
                (fk for fk in schema.foreign_keys if fk.target == schema.ordering.parent_column),
                None,
            )
            if parent_fk is None:
                return None
            parent_key = record.get_field(parent_fk.source)

        sequence = overrides.get(parent_key)
        if sequence and record.source_id in sequence:
            return sequence.index(record.source_id) + 1
        return None
