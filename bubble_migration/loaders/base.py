"""Destination store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)

FILTER_OPS = ("eq", "neq", "in", "is_null", "not_null", "gte", "lte", "like", "ilike")


@dataclass(frozen=True)
class Filter:
    """A single column predicate, combined with AND."""
    column: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", list(values))


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def not_null(column: str) -> Filter:
    return Filter(column, "not_null")


class DestinationStore(ABC):
    """
    Base class for the destination store.

    Implementations raise ``TransientIOError`` for connectivity problems that
    are safe to retry, ``DestinationWriteError`` when a write is rejected and
    ``DestinationUnavailableError`` when a read cannot be completed.
    """

    @abstractmethod
    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read all matching rows, paging internally.

        Args:
            table: Table name
            columns: Comma-separated column list
            filters: Predicates combined with AND
            order_by: Comma-separated columns to sort ascending by; paging
                relies on this order being total

        Returns:
            List of row dictionaries
        """
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[List[Filter]] = None) -> int:
        """Exact number of matching rows."""
        pass

    @abstractmethod
    def upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> List[Dict[str, Any]]:
        """Insert or update rows keyed on ``on_conflict`` and return them as stored."""
        pass

    @abstractmethod
    def update(self, table: str, values: Dict[str, Any], filters: List[Filter]) -> List[Dict[str, Any]]:
        """Update matching rows and return them."""
        pass

    @abstractmethod
    def delete(self, table: str, filters: List[Filter]) -> List[Dict[str, Any]]:
        """Delete matching rows and return them."""
        pass

    def validate_connection(self, table: str = "companies") -> bool:
        """Validate the connection to the destination store."""
        return True
