from __future__ import annotations

import pytest

from bubble_migration.errors import DestinationUnavailableError, TransientIOError
from bubble_migration.services.reconciliation import ReconciliationChecks, normalize_content
from bubble_migration.services.retry import RetryPolicy

from conftest import FakeExtractor


@pytest.fixture
def checks(store, registry):
    return ReconciliationChecks(store, registry)


def _seed_questions(store, orders, parent=10):
    rows = []
    for row_id, order in zip("abcde", orders):
        rows.append({
            "id": row_id,
            "bubble_id": f"Q-{row_id}",
            "parent_subsection_id": parent,
            "order_number": order,
            "created_at": "2023-01-01T00:00:00+00:00",
            "content": f"Question {row_id}",
        })
    store.seed("questions", *rows)


def _orders(store):
    return {row["id"]: row["order_number"] for row in store.rows("questions")}


def test_ordering_repair_renumbers_the_group(checks, store):
    _seed_questions(store, [1, None, 1, 4, None])

    violations = checks.find_ordering_violations("question")

    assert len(violations) == 1
    violation = violations[0]
    assert violation.parent_id == 10
    assert violation.null_count == 2
    assert violation.duplicate_values == [1]
    assert violation.missing_values == [2, 3, 5]
    assert violation.assignments == {"a": 1, "c": 2, "d": 3, "b": 4, "e": 5}

    groups, rows = checks.repair_ordering("question", violations)

    assert (groups, rows) == (1, 4)
    assert _orders(store) == {"a": 1, "b": 4, "c": 2, "d": 3, "e": 5}
    assert checks.find_ordering_violations("question") == []


def test_valid_groups_are_left_alone(checks, store):
    _seed_questions(store, [2, 1, 3])
    assert checks.find_ordering_violations("question") == []


def test_gap_and_offset_start_are_violations(checks, store):
    _seed_questions(store, [2, 3, 4])

    violations = checks.find_ordering_violations("question")

    assert violations[0].missing_values == [1]
    assert violations[0].changes == {"a": 1, "b": 2, "c": 3}


def test_older_rows_win_ties(checks, store):
    store.seed(
        "choices",
        {"id": 1, "parent_question_id": 7, "order_number": None, "created_at": "2023-03-01"},
        {"id": 2, "parent_question_id": 7, "order_number": None, "created_at": "2023-01-01"},
    )

    violation = checks.find_ordering_violations("choice")[0]

    assert violation.assignments == {2: 1, 1: 2}


def test_dry_run_repairs_nothing(store, registry):
    _seed_questions(store, [None, None])
    checks = ReconciliationChecks(store, registry, dry_run=True)

    assert checks.repair_ordering("question") == (0, 0)
    assert _orders(store) == {"a": None, "b": None}


def _seed_orphan_tree(store):
    store.seed("sections", {"id": 5, "bubble_id": "SEC1"})
    store.seed("subsections", {"id": 1, "bubble_id": "S1", "section_id": 999})
    store.seed("questions", {"id": 20, "bubble_id": "Q1", "parent_subsection_id": 1, "parent_section_id": 5})
    store.seed("choices", {"id": 30, "bubble_id": "CH1", "parent_question_id": 20})
    store.seed("answers", {"id": 40, "bubble_id": "A1", "parent_question_id": 20, "choice_id": 30})
    store.seed("question_tags", {"id": 50, "question_id": 20, "tag_id": 3})
    store.seed("sheet_questions", {"id": 60, "sheet_id": 1, "question_id": 20, "order_number": 1})


def test_find_orphans_reports_missing_parents(checks, store):
    _seed_orphan_tree(store)

    orphans = checks.find_orphans("subsection")

    assert len(orphans) == 1
    assert orphans[0].row_id == 1
    assert orphans[0].column == "section_id"
    assert orphans[0].missing_id == 999
    assert orphans[0].source_id == "S1"
    assert checks.find_orphans("question") == []


def test_deleting_orphans_cascades_to_dependents(checks, store):
    _seed_orphan_tree(store)

    deleted = checks.delete_orphans("subsection", checks.find_orphans("subsection"))

    assert deleted == 1
    for table in ("subsections", "questions", "choices", "answers", "question_tags", "sheet_questions"):
        assert store.rows(table) == [], table
    assert len(store.rows("sections")) == 1


def test_deleting_orphans_nulls_optional_references(checks, store):
    store.seed("users", {"id": 7, "bubble_id": "U1", "company_id": 999})
    store.seed("tags", {"id": 3, "bubble_id": "T1", "created_by": 7})

    assert checks.delete_orphans("user", checks.find_orphans("user")) == 1

    assert store.rows("users") == []
    assert store.rows("tags") == [{"id": 3, "bubble_id": "T1", "created_by": None}]


def test_dry_run_keeps_orphans(store, registry):
    _seed_orphan_tree(store)
    checks = ReconciliationChecks(store, registry, dry_run=True)

    assert checks.delete_orphans("subsection", checks.find_orphans("subsection")) == 0
    assert len(store.rows("subsections")) == 1


def test_cascade_reads_every_page_in_a_stable_order(checks, store):
    _seed_orphan_tree(store)

    checks.delete_orphans("subsection", checks.find_orphans("subsection"))

    assert ("questions", "id") in store.selects
    assert all(order_by for _, order_by in store.selects)


def test_transient_errors_during_cascade_are_retried(store, registry):
    _seed_orphan_tree(store)
    store.fail("delete", "answers", TransientIOError("timeout"))
    slept = []
    checks = ReconciliationChecks(store, registry, retry=RetryPolicy(max_attempts=3, sleep=slept.append))

    assert checks.delete_orphans("subsection", checks.find_orphans("subsection")) == 1
    assert store.rows("answers") == []
    assert [c[0] for c in store.calls if c[1] == "answers"].count("delete") == 2


def test_unreachable_store_stops_the_cascade(store, registry):
    _seed_orphan_tree(store)
    store.fail("delete", "answers", *[TransientIOError("timeout") for _ in range(2)])
    checks = ReconciliationChecks(store, registry, retry=RetryPolicy(max_attempts=2, sleep=lambda s: None))

    with pytest.raises(DestinationUnavailableError):
        checks.delete_orphans("subsection", checks.find_orphans("subsection"))
    assert len(store.rows("subsections")) == 1


def test_age_compares_timestamps_across_utc_offsets(checks, store):
    store.seed(
        "choices",
        {"id": 1, "parent_question_id": 7, "order_number": None, "created_at": "2023-01-01T05:00:00+05:00"},
        {"id": 2, "parent_question_id": 7, "order_number": None, "created_at": "2023-01-01T01:00:00Z"},
    )

    violation = checks.find_ordering_violations("choice")[0]

    assert violation.assignments == {1: 1, 2: 2}


def test_normalize_content():
    assert normalize_content("  Do you   RECYCLE? ") == "do you recycle?"
    assert normalize_content(None) == ""


def test_duplicates_keep_the_oldest_row_and_repoint_dependents(checks, store):
    store.seed(
        "choices",
        {"id": 30, "parent_question_id": 20, "content": "Yes", "created_at": "2023-01-01"},
        {"id": 31, "parent_question_id": 20, "content": " yes ", "created_at": "2023-02-01"},
        {"id": 32, "parent_question_id": 20, "content": "No", "created_at": "2023-01-01"},
        {"id": 33, "parent_question_id": 21, "content": "Yes", "created_at": "2023-01-01"},
    )
    store.seed("answers", {"id": 40, "choice_id": 31})

    groups = checks.find_duplicates("choice")

    assert len(groups) == 1
    assert groups[0].keep_id == 30
    assert groups[0].duplicate_ids == [31]

    assert checks.delete_duplicates("choice", groups) == 1
    assert sorted(row["id"] for row in store.rows("choices")) == [30, 32, 33]
    assert store.rows("answers")[0]["choice_id"] == 30


def test_duplicate_links_move_to_the_kept_row(checks, store):
    store.seed(
        "questions",
        {"id": 20, "parent_subsection_id": 1, "content": "Q", "created_at": "2023-01-01"},
        {"id": 21, "parent_subsection_id": 1, "content": "q", "created_at": "2023-06-01"},
    )
    store.seed(
        "question_tags",
        {"question_id": 20, "tag_id": 3},
        {"question_id": 21, "tag_id": 3},
        {"question_id": 21, "tag_id": 4},
    )

    checks.delete_duplicates("question", checks.find_duplicates("question"))

    pairs = sorted((row["question_id"], row["tag_id"]) for row in store.rows("question_tags"))
    assert pairs == [(20, 3), (20, 4)]
    assert [row["id"] for row in store.rows("questions")] == [20]


def test_compare_counts(checks, store):
    store.seed("tags", {"bubble_id": "T1"}, {"bubble_id": "T2"}, {"bubble_id": None})
    extractor = FakeExtractor({"tag": [{"_id": "T1"}, {"_id": "T2"}, {"_id": "T3"}]})

    comparison = checks.compare_counts("tag", extractor)

    assert comparison.source_count == 3
    assert comparison.destination_count == 2
    assert comparison.difference == 1
    assert not comparison.matches


def test_reconcile_runs_every_check_and_repairs(checks, store):
    store.seed("subsections", {"id": 10, "bubble_id": "S1"})
    _seed_questions(store, [None, 2])

    result = checks.reconcile("question", repair=True)

    assert result.row_count == 2
    assert result.groups_repaired == 1
    assert result.rows_reordered == 2
    assert result.orphans == []
    assert not result.has_unresolved
    assert result.to_dict()["summary"]["unresolved"] is False


def test_report_without_repairs_leaves_issues_unresolved(checks, store):
    store.seed("subsections", {"id": 10, "bubble_id": "S1"})
    _seed_questions(store, [None, 2])

    report = checks.report(["question"])

    assert report.get("question").unresolved_ordering == 1
    assert report.has_unresolved
    assert _orders(store) == {"a": None, "b": 2}


def test_table_counts(checks, store):
    store.seed("companies", {"bubble_id": "C1"})

    counts = checks.table_counts()

    assert counts["company"] == 1
    assert set(counts) == {
        "company", "user", "section", "subsection", "tag", "question", "choice", "sheet", "answer"
    }
