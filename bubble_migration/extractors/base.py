"""Base extractor interface: cursor paging over a legacy API."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional
import logging
import time

from ..errors import PaginationError
from ..models.record import LegacyRecord

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of legacy records."""
    records: List[LegacyRecord] = field(default_factory=list)
    cursor: int = 0
    count: int = 0
    remaining: int = 0


class BaseExtractor(ABC):
    """
    Base class for legacy record extractors.

    Subclasses fetch a single page at a cursor; ``pages`` drives the cursor
    until the API reports nothing remaining.
    """

    def __init__(self, page_delay: float = 0.0, sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize the extractor.

        Args:
            page_delay: Pause between consecutive page requests, in seconds
            sleep: Sleep function (injectable for tests)
        """
        self.page_delay = page_delay
        self._sleep = sleep or time.sleep
        self.pages_fetched = 0
        self.records_fetched = 0

    @abstractmethod
    def fetch_page(self, entity_type: str, cursor: int, limit: int) -> Page:
        """
        Fetch one page of records.

        Args:
            entity_type: Legacy entity type
            cursor: Offset of the first record
            limit: Maximum records to return

        Returns:
            Page with the records and the remaining count
        """
        pass

    @abstractmethod
    def count(self, entity_type: str) -> int:
        """Total number of records of an entity type."""
        pass

    @abstractmethod
    def get(self, entity_type: str, source_id: str) -> Optional[LegacyRecord]:
        """Fetch a single record by legacy id, or None if it does not exist."""
        pass

    def pages(self, entity_type: str, page_size: int = 100) -> Iterator[List[LegacyRecord]]:
        """
        Lazily yield pages of records until none remain.

        The cursor advances by the number of records returned.

        Raises:
            PaginationError: the API returned an empty page while reporting
                records remaining
        """
        cursor = 0
        while True:
            page = self.fetch_page(entity_type, cursor, page_size)
            self.pages_fetched += 1

            if not page.records:
                if page.remaining > 0:
                    raise PaginationError(
                        entity_type, cursor, f"empty page with {page.remaining} records remaining"
                    )
                break

            self.records_fetched += len(page.records)
            yield page.records
            cursor += len(page.records)
            logger.debug(f"{entity_type}: fetched {cursor} records, {page.remaining} remaining")

            if page.remaining <= 0:
                break
            if self.page_delay:
                self._sleep(self.page_delay)

    def stream(self, entity_type: str, page_size: int = 100) -> Iterator[LegacyRecord]:
        """Yield records one at a time."""
        for page in self.pages(entity_type, page_size):
            for record in page:
                yield record
