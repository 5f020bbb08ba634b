"""Entity schema models: how one legacy entity type maps onto one destination table."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum


class FieldType(str, Enum):
    """Supported legacy field types."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    LIST = "list"
    OBJECT = "object"
    ANY = "any"


class MissingReferencePolicy(str, Enum):
    """What to do when a foreign key cannot be resolved."""
    SKIP = "skip"  # skip the dependent record
    NULL = "null"  # write null and log a warning


@dataclass
class FieldDefinition:
    """A plain (non-reference) field copied from the legacy record."""
    source: str
    target: str
    type: FieldType = FieldType.STRING
    required: bool = False
    default: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "source": self.source,
            "target": self.target,
            "type": self.type.value,
        }
        if self.required:
            result["required"] = True
        if self.default is not None:
            result["default"] = self.default
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        """Create from dictionary representation."""
        field_type = data.get("type", "string")
        try:
            field_type = FieldType(field_type)
        except ValueError:
            field_type = FieldType.ANY

        return cls(
            source=data["source"],
            target=data.get("target", data["source"]),
            type=field_type,
            required=data.get("required", False),
            default=data.get("default"),
        )


@dataclass
class ForeignKey:
    """A legacy reference field resolved through the identifier mapper."""
    source: str
    target: str
    entity: str
    on_missing: MissingReferencePolicy = MissingReferencePolicy.SKIP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "entity": self.entity,
            "on_missing": self.on_missing.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForeignKey":
        return cls(
            source=data["source"],
            target=data["target"],
            entity=data["entity"],
            on_missing=MissingReferencePolicy(data.get("on_missing", "skip")),
        )


@dataclass
class OrderingSpec:
    """Sibling ordering within a parent group."""
    column: str = "order_number"
    source: Optional[str] = "Order"
    parent_column: Optional[str] = None  # destination column that defines the group

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column": self.column,
            "source": self.source,
            "parent_column": self.parent_column,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderingSpec":
        return cls(
            column=data.get("column", "order_number"),
            source=data.get("source", "Order"),
            parent_column=data.get("parent_column"),
        )


@dataclass
class LinkSpec:
    """A legacy list-of-references field stored as a join table."""
    source: str
    table: str
    owner_column: str
    target_column: str
    entity: str
    order_column: Optional[str] = None

    @property
    def on_conflict(self) -> str:
        return f"{self.owner_column},{self.target_column}"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "source": self.source,
            "table": self.table,
            "owner_column": self.owner_column,
            "target_column": self.target_column,
            "entity": self.entity,
        }
        if self.order_column:
            result["order_column"] = self.order_column
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkSpec":
        return cls(
            source=data["source"],
            table=data["table"],
            owner_column=data["owner_column"],
            target_column=data["target_column"],
            entity=data["entity"],
            order_column=data.get("order_column"),
        )


@dataclass
class EntitySchema:
    """Schema for one entity type (e.g., question) and its destination table."""
    name: str
    table: str
    fields: List[FieldDefinition] = field(default_factory=list)
    foreign_keys: List[ForeignKey] = field(default_factory=list)
    links: List[LinkSpec] = field(default_factory=list)
    ordering: Optional[OrderingSpec] = None
    child_lists: Dict[str, str] = field(default_factory=dict)  # legacy list field -> child entity
    content_column: Optional[str] = None
    natural_key: str = "bubble_id"
    primary_key: str = "id"
    created_column: str = "created_at"

    @property
    def dependencies(self) -> List[str]:
        """Entity types this one references, excluding itself."""
        deps = {fk.entity for fk in self.foreign_keys if fk.entity != self.name}
        return sorted(deps)

    def foreign_keys_to(self, entity: str) -> List[ForeignKey]:
        """Foreign keys of this schema that point at ``entity``."""
        return [fk for fk in self.foreign_keys if fk.entity == entity]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "table": self.table,
            "fields": [f.to_dict() for f in self.fields],
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "links": [link.to_dict() for link in self.links],
            "ordering": self.ordering.to_dict() if self.ordering else None,
            "child_lists": self.child_lists,
            "content_column": self.content_column,
            "natural_key": self.natural_key,
            "primary_key": self.primary_key,
            "created_column": self.created_column,
        }

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "EntitySchema":
        """Create from dictionary representation."""
        ordering = data.get("ordering")

        return cls(
            name=name,
            table=data.get("table", f"{name}s"),
            fields=[FieldDefinition.from_dict(f) for f in data.get("fields", [])],
            foreign_keys=[ForeignKey.from_dict(fk) for fk in data.get("foreign_keys", [])],
            links=[LinkSpec.from_dict(link) for link in data.get("links", [])],
            ordering=OrderingSpec.from_dict(ordering) if ordering else None,
            child_lists=data.get("child_lists", {}),
            content_column=data.get("content_column"),
            natural_key=data.get("natural_key", "bubble_id"),
            primary_key=data.get("primary_key", "id"),
            created_column=data.get("created_column", "created_at"),
        )

