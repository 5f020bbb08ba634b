from __future__ import annotations

import fnmatch
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from bubble_migration.extractors.base import BaseExtractor, Page
from bubble_migration.loaders.base import DestinationStore, Filter
from bubble_migration.models.migration import MigrationConfig, RetryConfig
from bubble_migration.models.record import LegacyRecord
from bubble_migration.services.id_mapper import IdentifierMapper
from bubble_migration.services.schema_registry import SchemaRegistry


def matches(f: Filter, row: Dict[str, Any]) -> bool:
    """Evaluate a store filter against an in-memory row, the way PostgREST would."""
    actual = row.get(f.column)
    if f.op == "eq":
        return actual == f.value
    if f.op == "neq":
        return actual != f.value
    if f.op == "in":
        return actual in f.value
    if f.op == "is_null":
        return actual is None
    if f.op == "not_null":
        return actual is not None
    if actual is None:
        return False
    if f.op == "gte":
        return actual >= f.value
    if f.op == "lte":
        return actual <= f.value
    pattern = str(f.value).replace("%", "*").replace("_", "?")
    if f.op == "like":
        return fnmatch.fnmatchcase(str(actual), pattern)
    return fnmatch.fnmatchcase(str(actual).lower(), pattern.lower())


def _sort_key(value: Any):
    if value is None:
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


class FakeStore(DestinationStore):
    """In-memory destination store with auto-increment ids and error injection."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[tuple] = []
        self.selects: List[tuple] = []
        self._errors: Dict[tuple, List[Exception]] = defaultdict(list)
        self._next_id = 1

    # Test helpers

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        stored = []
        for row in rows:
            row = dict(row)
            if "id" not in row:
                row["id"] = self._new_id()
            elif isinstance(row["id"], int):
                self._next_id = max(self._next_id, row["id"] + 1)
            self.tables[table].append(row)
            stored.append(dict(row))
        return stored

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.tables[table]]

    def fail(self, op: str, table: str, *errors: Exception) -> None:
        """Raise ``errors`` in turn on the next calls of ``op`` against ``table``."""
        self._errors[(op, table)].extend(errors)

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def _check(self, op: str, table: str, size: int = 0) -> None:
        self.calls.append((op, table, size))
        pending = self._errors.get((op, table))
        if pending:
            raise pending.pop(0)

    def _matching(self, table: str, filters: Optional[List[Filter]]) -> List[Dict[str, Any]]:
        return [row for row in self.tables[table] if all(matches(f, row) for f in filters or [])]

    # DestinationStore

    def select(self, table, columns="*", filters=None, order_by=None):
        self._check("select", table)
        rows = self._matching(table, filters)
        if order_by:
            keys = [c.strip() for c in order_by.split(",")]
            rows = sorted(rows, key=lambda r: tuple(_sort_key(r.get(k)) for k in keys))
        self.selects.append((table, order_by))
        if columns == "*":
            return [dict(r) for r in rows]
        wanted = [c.strip() for c in columns.split(",")]
        return [{c: r.get(c) for c in wanted} for r in rows]

    def count(self, table, filters=None):
        self._check("count", table)
        return len(self._matching(table, filters))

    def upsert(self, table, rows, on_conflict):
        self._check("upsert", table, len(rows))
        keys = on_conflict.split(",")
        stored = []
        for row in rows:
            existing = next(
                (r for r in self.tables[table] if all(r.get(k) == row.get(k) for k in keys)),
                None,
            )
            if existing is not None:
                existing.update(row)
                stored.append(dict(existing))
            else:
                stored.extend(self.seed(table, row))
        return stored

    def update(self, table, values, filters):
        self._check("update", table)
        matched = self._matching(table, filters)
        for row in matched:
            row.update(values)
        return [dict(r) for r in matched]

    def delete(self, table, filters):
        self._check("delete", table)
        matched = self._matching(table, filters)
        self.tables[table] = [r for r in self.tables[table] if r not in matched]
        return [dict(r) for r in matched]


class FakeExtractor(BaseExtractor):
    """Serves legacy records from memory, honouring cursor and limit."""

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        super().__init__(page_delay=0)
        self.data = data or {}
        self.requests: List[tuple] = []

    def fetch_page(self, entity_type, cursor, limit):
        self.requests.append((entity_type, cursor, limit))
        items = self.data.get(entity_type, [])
        chunk = items[cursor:cursor + limit]
        return Page(
            records=[self._record(entity_type, item) for item in chunk],
            cursor=cursor,
            count=len(chunk),
            remaining=max(len(items) - cursor - len(chunk), 0),
        )

    def count(self, entity_type):
        return len(self.data.get(entity_type, []))

    def get(self, entity_type, source_id):
        for item in self.data.get(entity_type, []):
            if item["_id"] == source_id:
                return self._record(entity_type, item)
        return None

    def _record(self, entity_type, item):
        return LegacyRecord(entity_type=entity_type, source_id=item["_id"], data=dict(item))


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    """Stands in for ``requests.Session``; replies are consumed in order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: List[tuple] = []
        self.headers: Dict[str, str] = {}

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def bubble_page(results: List[Dict[str, Any]], cursor: int = 0, remaining: int = 0) -> FakeResponse:
    return FakeResponse(200, {
        "response": {"cursor": cursor, "results": results, "count": len(results), "remaining": remaining}
    })


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry()


@pytest.fixture
def mapper() -> IdentifierMapper:
    return IdentifierMapper()


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    return MigrationConfig(
        bubble_api_url="https://app.example.com",
        bubble_api_token="token",
        supabase_url="https://project.supabase.co",
        supabase_key="service-key",
        page_size=2,
        batch_size=2,
        page_delay=0,
        retry=RetryConfig(max_attempts=3, backoff_factor=0),
        output_dir=str(tmp_path),
        save_report=False,
    )


ENV_VARS = (
    "BUBBLE_API_URL",
    "BUBBLE_API_TOKEN",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "MIGRATION_BATCH_SIZE",
    "MIGRATION_DRY_RUN",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Unset configuration variables; anything a .env file sets is undone afterwards."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
