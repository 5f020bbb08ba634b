"""Schema registry for entity schemas and their dependency order."""

import json
import logging
from typing import Any, Dict, List, Optional
from pathlib import Path

from ..errors import ConfigurationError
from ..models.schema import EntitySchema

logger = logging.getLogger(__name__)

DEFAULT_SCHEMAS_FILE = Path(__file__).resolve().parent.parent / "schemas" / "bubble.json"


class SchemaRegistry:
    """
    Registry of entity schemas.

    Supports:
    - Loading the entity definitions from a JSON file
    - Registering schemas programmatically
    - Topological migration order from foreign keys and join-table links
    - Finding the schemas that depend on a given entity
    """

    def __init__(self, schemas_file: Optional[str] = None):
        """
        Initialize the schema registry.

        Args:
            schemas_file: JSON file with an ``entities`` object; the packaged
                default is used when omitted
        """
        self.schemas: Dict[str, EntitySchema] = {}
        self.load_file(schemas_file or str(DEFAULT_SCHEMAS_FILE))

    @classmethod
    def from_schemas(cls, schemas: List[EntitySchema]) -> "SchemaRegistry":
        """Build a registry from already constructed schemas."""
        registry = cls.__new__(cls)
        registry.schemas = {}
        for schema in schemas:
            registry.register(schema)
        return registry

    def load_file(self, file_path: str) -> int:
        """
        Load entity schemas from a JSON file.

        Returns:
            Number of schemas loaded
        """
        path = Path(file_path)
        if not path.exists():
            raise ConfigurationError(f"Schema file does not exist: {file_path}")

        with open(path, 'r') as f:
            data = json.load(f)

        loaded = 0
        for name, entity_data in data.get("entities", {}).items():
            self.register(EntitySchema.from_dict(name, entity_data))
            loaded += 1
        logger.debug(f"Loaded {loaded} entity schemas from {file_path}")
        return loaded

    def register(self, schema: EntitySchema) -> None:
        """Register an entity schema."""
        self.schemas[schema.name.lower()] = schema

    def get(self, entity: str) -> EntitySchema:
        """Get a schema by entity name."""
        schema = self.schemas.get(entity.lower())
        if schema is None:
            known = ", ".join(sorted(self.schemas))
            raise ConfigurationError(f"Unknown entity type '{entity}' (known: {known})")
        return schema

    def list_entities(self) -> List[str]:
        return list(self.schemas.keys())

    def requirements(self, entity: str) -> List[str]:
        """Entities that must be migrated before ``entity``: foreign keys and link targets."""
        schema = self.get(entity)
        deps = set(schema.dependencies)
        deps.update(link.entity for link in schema.links)
        deps.discard(schema.name)
        return sorted(d for d in deps if d in self.schemas)

    def migration_order(self, entities: Optional[List[str]] = None) -> List[str]:
        """
        Order entity types so that every dependency comes first.

        Args:
            entities: Subset to order; all registered entities when omitted

        Returns:
            Entity names in strict topological order
        """
        wanted = [self.get(e).name for e in entities] if entities else list(self.schemas)
        ordered: List[str] = []
        visiting: Dict[str, bool] = {}

        def visit(name: str) -> None:
            if name in ordered:
                return
            if visiting.get(name):
                raise ConfigurationError(f"Dependency cycle through entity '{name}'")
            visiting[name] = True
            for dep in self.requirements(name):
                visit(dep)
            visiting[name] = False
            ordered.append(name)

        for name in sorted(self.schemas):
            visit(name)

        return [name for name in ordered if name in wanted]

    def dependents_of(self, entity: str) -> List[EntitySchema]:
        """Schemas with a foreign key pointing at ``entity``."""
        return [
            schema for schema in self.schemas.values()
            if schema.name != entity and schema.foreign_keys_to(entity)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {"entities": {name: s.to_dict() for name, s in self.schemas.items()}}
