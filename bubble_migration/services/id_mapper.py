"""Legacy id to destination id mapping for one migration run."""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import MappingConflictError, MissingReferenceError
from ..loaders.base import DestinationStore, not_null

logger = logging.getLogger(__name__)

CreateFallback = Callable[[str, str], Optional[str]]


class IdentifierMapper:
    """
    Maps ``(entity_type, source_id)`` to a destination id.

    One instance belongs to one run and is passed explicitly to the transformer
    and writer. Nothing is persisted: the mapping can always be rebuilt from
    the destination tables' legacy-id column with ``preload``.
    """

    def __init__(self):
        self._mappings: Dict[Tuple[str, str], str] = {}

    def __len__(self) -> int:
        return len(self._mappings)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._mappings

    def get(self, entity_type: str, source_id: str) -> Optional[str]:
        """Return the mapped destination id, or None."""
        return self._mappings.get((entity_type, source_id))

    def record(self, entity_type: str, source_id: str, destination_id: str) -> None:
        """
        Store a mapping. Recording the same pair twice is a no-op.

        Raises:
            MappingConflictError: the pair is already mapped to a different id
        """
        key = (entity_type, source_id)
        existing = self._mappings.get(key)
        if existing is not None and existing != destination_id:
            raise MappingConflictError(entity_type, source_id, existing, destination_id)
        self._mappings[key] = destination_id

    def resolve(
        self,
        entity_type: str,
        source_id: str,
        create: Optional[CreateFallback] = None,
    ) -> str:
        """
        Resolve a legacy id to its destination id.

        Args:
            entity_type: Entity type of the referenced record
            source_id: Legacy id of the referenced record
            create: Called as ``create(entity_type, source_id)`` when no
                mapping exists; must return the new destination id or None

        Returns:
            The destination id

        Raises:
            MissingReferenceError: no mapping and no (successful) fallback
        """
        destination_id = self._mappings.get((entity_type, source_id))
        if destination_id is not None:
            return destination_id

        if create is not None:
            destination_id = create(entity_type, source_id)
            if destination_id is not None:
                self.record(entity_type, source_id, destination_id)
                logger.debug(f"Created {entity_type}:{source_id} -> {destination_id} via fallback")
                return destination_id

        raise MissingReferenceError(entity_type, source_id)

    def preload(
        self,
        entity_type: str,
        table: str,
        store: DestinationStore,
        source_id_column: str = "bubble_id",
        id_column: str = "id",
    ) -> int:
        """
        Rebuild mappings for one entity type from the destination store.

        Rows sharing a legacy id are a reconciliation defect; the first row by
        ``id_column`` wins and the rest are logged.

        Returns:
            Number of new mappings loaded
        """
        rows = store.select(
            table,
            columns=f"{id_column},{source_id_column}",
            filters=[not_null(source_id_column)],
            order_by=id_column,
        )
        loaded = 0
        for row in rows:
            key = (entity_type, row[source_id_column])
            destination_id = row[id_column]
            existing = self._mappings.get(key)
            if existing is None:
                self._mappings[key] = destination_id
                loaded += 1
            elif existing != destination_id:
                logger.warning(
                    f"{table} has several rows for {source_id_column}={row[source_id_column]}; "
                    f"keeping {existing}, ignoring {destination_id}"
                )
        logger.info(f"Preloaded {loaded} {entity_type} mappings from {table}")
        return loaded

    def mappings(self, entity_type: Optional[str] = None) -> Dict[Tuple[str, str], str]:
        """Copy of the current mappings, optionally for one entity type."""
        return {
            key: value for key, value in self._mappings.items()
            if entity_type is None or key[0] == entity_type
        }

    def entity_types(self) -> List[str]:
        return sorted({key[0] for key in self._mappings})
