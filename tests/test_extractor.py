from __future__ import annotations

import math

import pytest
import requests

from bubble_migration.errors import LegacyApiError, PaginationError
from bubble_migration.extractors.bubble_extractor import BubbleExtractor
from bubble_migration.services.retry import RetryPolicy

from conftest import FakeExtractor, FakeResponse, FakeSession, bubble_page


def _records(start, n):
    return [{"_id": f"q{i}", "Content": f"Question {i}"} for i in range(start, start + n)]


def _extractor(session, slept=None):
    sleep = (slept if slept is not None else []).append
    return BubbleExtractor(
        "https://app.example.com/",
        api_token="secret",
        retry=RetryPolicy(max_attempts=3, sleep=sleep),
        page_delay=0,
        session=session,
        sleep=sleep,
    )


def test_pages_until_nothing_remains():
    session = FakeSession(
        bubble_page(_records(0, 2), cursor=0, remaining=3),
        bubble_page(_records(2, 2), cursor=2, remaining=1),
        bubble_page(_records(4, 1), cursor=4, remaining=0),
    )
    extractor = _extractor(session)

    ids = [r.source_id for page in extractor.pages("question", page_size=2) for r in page]

    assert ids == ["q0", "q1", "q2", "q3", "q4"]
    assert len(session.calls) == math.ceil(5 / 2)
    assert [params["cursor"] for _, params in session.calls] == [0, 2, 4]
    assert all(params["limit"] == 2 for _, params in session.calls)
    assert session.calls[0][0] == "https://app.example.com/api/1.1/obj/question"


def test_every_record_is_yielded_exactly_once():
    data = {"question": _records(0, 7)}
    extractor = FakeExtractor(data)

    ids = [r.source_id for r in extractor.stream("question", page_size=3)]

    assert ids == [f"q{i}" for i in range(7)]
    assert len(extractor.requests) == 3


def test_transient_failure_is_retried_at_the_same_cursor():
    slept = []
    session = FakeSession(
        bubble_page(_records(0, 2), cursor=0, remaining=1),
        FakeResponse(503, {"error": "unavailable"}),
        requests.ConnectionError("reset by peer"),
        bubble_page(_records(2, 1), cursor=2, remaining=0),
    )
    extractor = _extractor(session, slept)

    ids = [r.source_id for r in extractor.stream("question", page_size=2)]

    assert ids == ["q0", "q1", "q2"]
    assert [params["cursor"] for _, params in session.calls] == [0, 2, 2, 2]
    assert slept == [2.0]


def test_exhausted_retries_raise_pagination_error():
    session = FakeSession(*[FakeResponse(503, {}) for _ in range(3)])
    extractor = _extractor(session)

    with pytest.raises(PaginationError) as exc:
        list(extractor.pages("question"))
    assert exc.value.cursor == 0
    assert exc.value.fatal


def test_empty_page_with_records_remaining_is_an_error():
    session = FakeSession(bubble_page([], cursor=0, remaining=5))
    extractor = _extractor(session)

    with pytest.raises(PaginationError):
        list(extractor.pages("question"))


def test_client_errors_are_not_retried():
    session = FakeSession(FakeResponse(401, {"message": "bad token"}))
    extractor = _extractor(session)

    with pytest.raises(LegacyApiError) as exc:
        extractor.fetch_page("question", 0, 100)
    assert exc.value.status_code == 401
    assert len(session.calls) == 1


def test_invalid_json_is_a_legacy_api_error():
    session = FakeSession(FakeResponse(200, None, text="<html>maintenance</html>"))
    extractor = _extractor(session)

    with pytest.raises(LegacyApiError):
        extractor.fetch_page("question", 0, 100)


def test_count_adds_remaining_to_the_first_page():
    session = FakeSession(bubble_page(_records(0, 1), remaining=41))
    extractor = _extractor(session)

    assert extractor.count("question") == 42
    assert session.calls[0][1] == {"cursor": 0, "limit": 1}


def test_get_returns_none_for_missing_record():
    session = FakeSession(FakeResponse(404, {"status": "NOT_FOUND"}))
    extractor = _extractor(session)

    assert extractor.get("question", "missing") is None
    assert session.calls[0][0].endswith("/api/1.1/obj/question/missing")


def test_get_parses_timestamps():
    body = {"response": {"_id": "q1", "Created Date": "2023-01-05T10:00:00.000Z", "Modified Date": 1672912800000}}
    session = FakeSession(FakeResponse(200, body))
    extractor = _extractor(session)

    record = extractor.get("question", "q1")

    assert record.source_id == "q1"
    assert record.created_at.year == 2023
    assert record.modified_at is not None
    assert record.modified_at.tzinfo is not None


def test_session_carries_bearer_token():
    extractor = BubbleExtractor("https://app.example.com", api_token="secret")
    assert extractor._session.headers["Authorization"] == "Bearer secret"
