"""Supabase (PostgREST) implementation of the destination store."""

import logging
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from .base import DestinationStore, Filter
from ..errors import (
    ConfigurationError,
    DestinationUnavailableError,
    DestinationWriteError,
    TransientIOError,
)
from ..models.migration import MigrationConfig

logger = logging.getLogger(__name__)

# PostgREST caps responses at 1000 rows by default
SELECT_PAGE_SIZE = 1000


def _is_transient(error: APIError) -> bool:
    # PGRST000-PGRST003: PostgREST could not reach or connect to the database
    code = str(error.code or "")
    return code.startswith("PGRST00") or code.startswith("5")


class SupabaseStore(DestinationStore):
    """
    Destination store backed by the supabase client.

    Supports:
    - Paged selects (``range`` in steps of 1000 rows)
    - Exact counts
    - Insert, upsert with ``on_conflict``, update and delete
    - Equality, range, pattern and null predicates
    """

    def __init__(self, client: Client, page_size: int = SELECT_PAGE_SIZE):
        """
        Initialize the store.

        Args:
            client: Supabase client (service role key for writes)
            page_size: Rows per select request
        """
        self.client = client
        self.page_size = page_size

    @classmethod
    def from_config(cls, config: MigrationConfig) -> "SupabaseStore":
        if not config.supabase_url or not config.supabase_key:
            raise ConfigurationError("supabase_url and supabase_key are required")
        return cls(create_client(config.supabase_url, config.supabase_key))

    def _apply_filters(self, query, filters: Optional[List[Filter]]):
        for f in filters or []:
            if f.op == "eq":
                query = query.eq(f.column, f.value)
            elif f.op == "neq":
                query = query.neq(f.column, f.value)
            elif f.op == "in":
                query = query.in_(f.column, list(f.value))
            elif f.op == "is_null":
                query = query.is_(f.column, "null")
            elif f.op == "not_null":
                query = query.not_.is_(f.column, "null")
            elif f.op == "gte":
                query = query.gte(f.column, f.value)
            elif f.op == "lte":
                query = query.lte(f.column, f.value)
            elif f.op == "like":
                query = query.like(f.column, f.value)
            elif f.op == "ilike":
                query = query.ilike(f.column, f.value)
        return query

    def _execute(self, query, description: str, write: bool):
        """Execute a query, translating client errors into migration errors."""
        try:
            return query.execute()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientIOError(f"{description}: {e}")
        except APIError as e:
            if _is_transient(e):
                raise TransientIOError(f"{description}: {e.message}")
            if write:
                raise DestinationWriteError(
                    f"{description}: {e.message}",
                    code=e.code,
                    details={"details": e.details, "hint": e.hint},
                )
            raise DestinationUnavailableError(f"{description}: {e.message} (code {e.code})")

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[List[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = self._apply_filters(self.client.table(table).select(columns), filters)
            if order_by:
                for column in order_by.split(","):
                    query = query.order(column.strip())
            query = query.range(offset, offset + self.page_size - 1)
            response = self._execute(query, f"select {table}", write=False)
            batch = response.data or []
            rows.extend(batch)
            if len(batch) < self.page_size:
                break
            offset += self.page_size
        logger.debug(f"Selected {len(rows)} rows from {table}")
        return rows

    def count(self, table: str, filters: Optional[List[Filter]] = None) -> int:
        query = self._apply_filters(self.client.table(table).select("*", count="exact", head=True), filters)
        response = self._execute(query, f"count {table}", write=False)
        return response.count or 0

    def upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> List[Dict[str, Any]]:
        if not rows:
            return []
        query = self.client.table(table).upsert(rows, on_conflict=on_conflict)
        response = self._execute(query, f"upsert {table}", write=True)
        return response.data or []

    def update(self, table: str, values: Dict[str, Any], filters: List[Filter]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to update without filters")
        query = self._apply_filters(self.client.table(table).update(values), filters)
        response = self._execute(query, f"update {table}", write=True)
        return response.data or []

    def delete(self, table: str, filters: List[Filter]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        query = self._apply_filters(self.client.table(table).delete(), filters)
        response = self._execute(query, f"delete {table}", write=True)
        return response.data or []

    def validate_connection(self, table: str = "companies") -> bool:
        """Cheap request to confirm the project URL and key work."""
        try:
            self.count(table)
            return True
        except (TransientIOError, DestinationUnavailableError) as e:
            logger.error(f"Supabase connection check failed: {e}")
            return False
