from __future__ import annotations

import json

import pytest

from bubble_migration.errors import ConfigurationError
from bubble_migration.models.schema import EntitySchema, ForeignKey
from bubble_migration.services.schema_registry import SchemaRegistry


def test_packaged_schemas_load(registry):
    assert set(registry.list_entities()) == {
        "company", "user", "section", "subsection", "tag", "question", "choice", "sheet", "answer"
    }
    question = registry.get("question")
    assert question.table == "questions"
    assert question.ordering.parent_column == "parent_subsection_id"


def test_migration_order_puts_dependencies_first(registry):
    order = registry.migration_order()

    for name in order:
        for dependency in registry.requirements(name):
            assert order.index(dependency) < order.index(name), (dependency, name)


def test_migration_order_of_a_subset(registry):
    assert registry.migration_order(["answer", "company"]) == ["company", "answer"]


def test_link_targets_are_requirements(registry):
    assert "tag" in registry.requirements("question")
    assert "question" in registry.requirements("sheet")


def test_dependents(registry):
    names = {schema.name for schema in registry.dependents_of("question")}
    assert names == {"choice", "answer"}


def test_unknown_entity(registry):
    with pytest.raises(ConfigurationError):
        registry.get("widget")


def test_cycles_are_rejected():
    registry = SchemaRegistry.from_schemas([
        EntitySchema("a", "as", foreign_keys=[ForeignKey("B", "b_id", "b")]),
        EntitySchema("b", "bs", foreign_keys=[ForeignKey("A", "a_id", "a")]),
    ])
    with pytest.raises(ConfigurationError):
        registry.migration_order()


def test_missing_schema_file(tmp_path):
    with pytest.raises(ConfigurationError):
        SchemaRegistry(str(tmp_path / "missing.json"))


def test_custom_schema_file(tmp_path):
    path = tmp_path / "schemas.json"
    path.write_text(json.dumps({"entities": {"company": {"table": "orgs", "fields": [{"source": "Name"}]}}}))

    registry = SchemaRegistry(str(path))

    assert registry.get("company").table == "orgs"
    assert registry.get("company").fields[0].target == "Name"
