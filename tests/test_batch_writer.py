from __future__ import annotations

import pytest

from bubble_migration.errors import DestinationUnavailableError, DestinationWriteError, TransientIOError
from bubble_migration.loaders.batch_writer import BatchedWriter, dry_run_id
from bubble_migration.models.record import DestinationRow
from bubble_migration.services.retry import RetryPolicy


def _rows(*source_ids):
    return [
        DestinationRow("company", "companies", sid, {"name": f"Company {sid}"})
        for sid in source_ids
    ]


@pytest.fixture
def schema(registry):
    return registry.get("company")


@pytest.fixture
def writer(store, mapper):
    return BatchedWriter(store, mapper, retry=RetryPolicy(max_attempts=2, sleep=lambda s: None), batch_size=2)


def test_writes_in_batches_and_records_ids(writer, store, mapper, schema):
    result = writer.write(schema, _rows("c1", "c2", "c3"))

    assert result.inserted == 3
    assert result.failed == 0
    assert [c for c in store.calls if c[0] == "upsert"] == [
        ("upsert", "companies", 2),
        ("upsert", "companies", 1),
    ]
    stored = {row["bubble_id"]: row["id"] for row in store.rows("companies")}
    assert result.destination_ids == stored
    assert mapper.get("company", "c2") == stored["c2"]


def test_rewriting_is_idempotent(writer, store, schema):
    writer.write(schema, _rows("c1", "c2", "c3"))
    before = store.rows("companies")

    result = writer.write(schema, _rows("c1", "c2", "c3"))

    assert result.inserted == 0
    assert result.skipped == 3
    assert store.rows("companies") == before


def test_existing_rows_are_updated_when_asked(store, mapper, schema):
    store.seed("companies", {"id": 1, "bubble_id": "c1", "name": "Old"})
    writer = BatchedWriter(store, mapper, batch_size=10, update_existing=True)

    result = writer.write(schema, _rows("c1", "c2"))

    assert result.updated == 1
    assert result.inserted == 1
    assert store.rows("companies")[0] == {"id": 1, "bubble_id": "c1", "name": "Company c1"}


def test_duplicate_legacy_id_in_one_batch_is_written_once(writer, store, schema):
    result = writer.write(schema, _rows("c1", "c1"))

    assert result.inserted == 1
    assert result.skipped == 1
    assert len(store.rows("companies")) == 1


def test_rejected_batch_does_not_stop_later_batches(writer, store, schema):
    store.fail("upsert", "companies", DestinationWriteError("null value in column", code="23502"))

    result = writer.write(schema, _rows("c1", "c2", "c3"))

    assert result.failed == 2
    assert result.inserted == 1
    assert result.failed_source_ids == ["c1", "c2"]
    assert result.failures[0]["code"] == "23502"
    assert [row["bubble_id"] for row in store.rows("companies")] == ["c3"]


def test_transient_errors_are_retried(writer, store, schema):
    store.fail("upsert", "companies", TransientIOError("timeout"))

    result = writer.write(schema, _rows("c1"))

    assert result.inserted == 1
    assert len(store.rows("companies")) == 1


def test_exhausted_retries_are_fatal(writer, store, schema):
    store.fail("upsert", "companies", TransientIOError("timeout"), TransientIOError("timeout"))

    with pytest.raises(DestinationUnavailableError) as exc:
        writer.write(schema, _rows("c1"))
    assert exc.value.fatal


def test_dry_run_never_writes(store, mapper, schema):
    store.seed("companies", {"id": 1, "bubble_id": "c1"})
    writer = BatchedWriter(store, mapper, dry_run=True)

    result = writer.write(schema, _rows("c1", "c2"))

    assert result.inserted == 1
    assert result.skipped == 1
    assert not [c for c in store.calls if c[0] in ("upsert", "update", "delete")]
    assert mapper.get("company", "c1") == 1
    assert mapper.get("company", "c2") == dry_run_id("company", "c2") == "dry-run:company:c2"


def test_write_links_upserts_on_the_pair(writer, store):
    rows = [{"question_id": 1, "tag_id": 3}, {"question_id": 1, "tag_id": 4}]

    writer.write_links("question_tags", rows, on_conflict="question_id,tag_id")
    result = writer.write_links("question_tags", rows, on_conflict="question_id,tag_id")

    assert result.inserted == 2
    assert len(store.rows("question_tags")) == 2
