from __future__ import annotations

import json

import pytest

from tablemirror.db import helpers
from tablemirror.errors import ConfigurationError, NotFoundError, ValidationError


class TestIdentifiers:
    @pytest.mark.parametrize("name", ["_idx", "info", "Table_2"])
    def test_valid_identifiers_pass(self, name: str) -> None:
        assert helpers._validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "2fast", "a-b", "x y", "'; DROP TABLE--", "a" * 64, None])
    def test_invalid_identifiers_are_rejected(self, name) -> None:
        with pytest.raises(ConfigurationError):
            helpers._validate_identifier(name, "column")

    def test_quote_table_always_quotes(self, engine) -> None:
        assert helpers.quote_table(engine.dialect, "tk", "info") == '"tk"."info"'
        assert helpers.quote_table(engine.dialect, None, "select") == '"select"'
        assert helpers.quote_identifier(engine.dialect, "MixedCase", "column") == '"MixedCase"'


class TestIntrospection:
    def test_list_tables(self, engine, info_table, table_factory) -> None:
        table_factory("other", '"id" INTEGER', schema="public")

        assert helpers.list_tables(engine, schema="tk") == ["tk.info"]
        assert {"tk.info", "public.other"} <= set(helpers.list_tables(engine))

    def test_table_exists_reads_public_by_default(self, engine, table_factory) -> None:
        table_factory("other", '"id" INTEGER', schema="public")

        assert helpers.table_exists(engine, "other")
        assert helpers.table_exists(engine, "public.other")
        assert not helpers.table_exists(engine, "tk.other")

    def test_get_table_columns(self, engine, info_table) -> None:
        columns = helpers.get_table_columns(engine, "info", schema="tk")

        assert [c["column_name"] for c in columns] == ["_idx", "name", "extra"]
        assert columns[1]["data_type"] == "TEXT"
        assert columns[1]["is_nullable"] is True

    def test_prepare_data_for_table_drops_unknown_keys(self, engine, info_table) -> None:
        prepared = helpers.prepare_data_for_table(engine, "tk.info", {"name": "x", "bogus": 1})

        assert prepared == {"name": "x"}


class TestRowWrites:
    def test_insert_row_defaults_to_write_schema(self, engine, info_table) -> None:
        row = helpers.insert_row(engine, "info", {"_idx": 2, "name": "c", "extra": {"k": [1]}, "bogus": 0})

        assert row["_idx"] == 2
        assert json.loads(row["extra"]) == {"k": [1]}

    def test_insert_row_without_known_columns(self, engine, info_table) -> None:
        with pytest.raises(ValidationError):
            helpers.insert_row(engine, "info", {"bogus": 0})

    def test_insert_into_missing_table(self, engine) -> None:
        with pytest.raises(NotFoundError):
            helpers.insert_row(engine, "missing", {"name": "x"})

    def test_update_rows_returns_updated_rows(self, engine, info_table) -> None:
        updated = helpers.update_rows(engine, "info", {"name": "z"}, {"_idx": 1})

        assert [(r["_idx"], r["name"]) for r in updated] == [(1, "z")]
        assert helpers.read_table(engine, "tk.info", where={"name": "z"})[0]["_idx"] == 1

    def test_update_rows_requires_where(self, engine, info_table) -> None:
        with pytest.raises(ValidationError):
            helpers.update_rows(engine, "info", {"name": "z"}, {})

    def test_delete_rows(self, engine, info_table) -> None:
        deleted = helpers.delete_rows(engine, "info", {"name": "a"})

        assert [r["_idx"] for r in deleted] == [0]
        assert [r["_idx"] for r in helpers.read_table(engine, "tk.info")] == [1]

    def test_delete_rows_requires_where(self, engine, info_table) -> None:
        with pytest.raises(ValidationError):
            helpers.delete_rows(engine, "info", {})


class TestTableLifecycle:
    def test_add_read_and_remove_table(self, engine) -> None:
        qualified = helpers.add_table(
            engine,
            "notes",
            [{"name": "_idx", "type": "INTEGER PRIMARY KEY"}, {"name": "body", "type": "TEXT"}],
        )
        assert qualified == "tk.notes"

        helpers.insert_row(engine, "notes", {"_idx": 0, "body": "hi"})
        assert helpers.read_table(engine, "notes", schema="tk") == [{"_idx": 0, "body": "hi"}]

        assert helpers.remove_table(engine, "notes") == "tk.notes"
        assert not helpers.table_exists(engine, "tk.notes")

    def test_add_existing_table(self, engine, info_table) -> None:
        with pytest.raises(ConfigurationError, match="already exists"):
            helpers.add_table(engine, "info", [{"name": "x", "type": "TEXT"}])

    def test_add_table_without_columns(self, engine) -> None:
        with pytest.raises(ValidationError):
            helpers.add_table(engine, "empty", [])

    def test_remove_missing_table(self, engine) -> None:
        with pytest.raises(NotFoundError):
            helpers.remove_table(engine, "missing")

    def test_read_table_limit_and_filter(self, engine, info_table) -> None:
        assert len(helpers.read_table(engine, "tk.info", limit=1)) == 1
        assert helpers.read_table(engine, "tk.info", where={"_idx": 5}) == []

    def test_read_missing_table(self, engine) -> None:
        with pytest.raises(NotFoundError):
            helpers.read_table(engine, "missing")
