"""
Table helpers that talk to the database directly, without a mirror.

Writes default to the ``tk`` schema and reads to ``public``; a dotted
"schema.table" name always overrides the default.

⚠️ SECURITY CONTRACT ⚠️
Table, schema and column names are validated and quoted, but they are still
interpolated into SQL. They MUST be trusted identifiers, not raw user input.
Column types passed to ``add_table`` are inserted verbatim.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import inspect
from sqlalchemy.engine import Dialect, Engine

from ..config import DEFAULT_READ_SCHEMA, DEFAULT_WRITE_SCHEMA, split_table_name
from ..errors import ConfigurationError, NotFoundError, ValidationError
from ..models import serialize_value
from .session import DbSession

MAX_IDENTIFIER_LENGTH = 63

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_SYSTEM_SCHEMAS = frozenset({"pg_catalog", "information_schema", "pg_toast"})


def _validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (schema/table/column name) is safe for SQL interpolation.

    Identifiers are restricted to letters, digits and underscores, must not
    start with a digit, and must fit PostgreSQL's 63-character limit.

    Raises:
        ConfigurationError: If the identifier is not a string, is empty, or is unsafe

    Example:
        >>> _validate_identifier("_idx", "column")
        '_idx'
        >>> _validate_identifier("'; DROP TABLE--", "table")
        ConfigurationError: Invalid table "'; DROP TABLE--": ...
    """
    if not isinstance(name, str):
        raise ConfigurationError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ConfigurationError(f"{identifier_type} cannot be empty")

    if not _IDENTIFIER_RE.match(name):
        raise ConfigurationError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ConfigurationError(
            f"{identifier_type} {name!r} exceeds the {MAX_IDENTIFIER_LENGTH}-character limit"
        )

    return name


def quote_identifier(dialect: Dialect, name: str, identifier_type: str = "identifier") -> str:
    return dialect.identifier_preparer.quote_identifier(_validate_identifier(name, identifier_type))


def quote_table(dialect: Dialect, schema: Optional[str], table: str) -> str:
    quoted = quote_identifier(dialect, table, "table")
    if schema is None:
        return quoted
    return f"{quote_identifier(dialect, schema, 'schema')}.{quoted}"


def _write_target(table_name: str) -> tuple[str, str]:
    schema, table = split_table_name(table_name, DEFAULT_WRITE_SCHEMA)
    return schema or DEFAULT_WRITE_SCHEMA, table


def _read_target(table_name: str, schema: Optional[str] = None) -> tuple[str, str]:
    resolved, table = split_table_name(table_name, schema or DEFAULT_READ_SCHEMA)
    return resolved or DEFAULT_READ_SCHEMA, table


def _where_sql(
    dialect: Dialect,
    where: Mapping[str, Any],
    params: dict[str, Any],
) -> str:
    # Sorted keys for deterministic SQL.
    clauses = []
    for i, (col, val) in enumerate(sorted(where.items())):
        param_name = f"where_{i}"
        clauses.append(f"{quote_identifier(dialect, col, 'column')} = :{param_name}")
        params[param_name] = val
    return " AND ".join(clauses)


def list_tables(engine: Engine, schema: Optional[str] = None) -> list[str]:
    """
    List user tables as "schema.table", optionally for one schema only.
    """
    inspector = inspect(engine)
    if schema:
        schemas = [schema]
    else:
        schemas = [s for s in inspector.get_schema_names() if s not in _SYSTEM_SCHEMAS]

    return sorted(
        f"{s}.{t}"
        for s in schemas
        for t in inspector.get_table_names(schema=s)
    )


def table_exists(engine: Engine, qualified_name: str) -> bool:
    schema, table = _read_target(qualified_name)
    return inspect(engine).has_table(table, schema=schema)


def get_table_columns(
    engine: Engine,
    table_name: str,
    schema: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Column info for a table, in ordinal order.

    Returns:
        List of dicts with ``column_name``, ``data_type``, ``is_nullable``
        and ``column_default``
    """
    resolved, table = _read_target(table_name, schema)
    columns = inspect(engine).get_columns(table, schema=resolved)
    return [
        {
            "column_name": col["name"],
            "data_type": col["type"].compile(dialect=engine.dialect),
            "is_nullable": col["nullable"],
            "column_default": col.get("default"),
        }
        for col in columns
    ]


def prepare_data_for_table(engine: Engine, table_name: str, data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Keep only the keys of ``data`` that are columns of the table.
    """
    names = {c["column_name"] for c in get_table_columns(engine, table_name)}
    return {key: value for key, value in data.items() if key in names}


def _require_table(engine: Engine, schema: str, table: str) -> str:
    qualified = f"{schema}.{table}"
    if not table_exists(engine, qualified):
        raise NotFoundError(f'Table "{qualified}" does not exist')
    return qualified


def insert_row(engine: Engine, table_name: str, data: Mapping[str, Any]) -> dict[str, Any] | None:
    """
    Insert one row, ignoring keys that are not columns of the table.

    Returns:
        The inserted row as stored (``RETURNING *``)

    Raises:
        NotFoundError: If the table does not exist
        ValidationError: If no key of ``data`` is a column of the table
    """
    schema, table = _write_target(table_name)
    qualified = _require_table(engine, schema, table)

    safe = prepare_data_for_table(engine, qualified, data)
    if not safe:
        raise ValidationError("No valid columns to insert")

    dialect = engine.dialect
    cols = list(safe)
    params = {f"c_{i}": serialize_value(safe[col]) for i, col in enumerate(cols)}
    col_sql = ", ".join(quote_identifier(dialect, col, "column") for col in cols)
    placeholders = ", ".join(f":c_{i}" for i in range(len(cols)))

    sql = (
        f"INSERT INTO {quote_table(dialect, schema, table)} ({col_sql}) "
        f"VALUES ({placeholders}) RETURNING *"
    )
    with DbSession(engine) as session:
        return session.fetch_one(sql, params)


def update_rows(
    engine: Engine,
    table_name: str,
    data: Mapping[str, Any],
    where: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """
    Update every row matching ``where`` (equality on each key, AND-ed).

    Raises:
        NotFoundError: If the table does not exist
        ValidationError: If no key of ``data`` is a column, or ``where`` is empty
    """
    schema, table = _write_target(table_name)
    qualified = _require_table(engine, schema, table)

    safe = prepare_data_for_table(engine, qualified, data)
    if not safe:
        raise ValidationError("No valid columns to update")
    if not where:
        raise ValidationError("update_rows requires a non-empty where mapping")

    dialect = engine.dialect
    params: dict[str, Any] = {}
    set_clauses = []
    for i, (col, val) in enumerate(safe.items()):
        set_clauses.append(f"{quote_identifier(dialect, col, 'column')} = :c_{i}")
        params[f"c_{i}"] = serialize_value(val)

    where_sql = _where_sql(dialect, where, params)
    sql = (
        f"UPDATE {quote_table(dialect, schema, table)} SET {', '.join(set_clauses)} "
        f"WHERE {where_sql} RETURNING *"
    )
    with DbSession(engine) as session:
        return session.fetch_all(sql, params)


def delete_rows(engine: Engine, table_name: str, where: Mapping[str, Any]) -> list[dict[str, Any]]:
    """
    Delete every row matching ``where`` and return the deleted rows.

    Raises:
        NotFoundError: If the table does not exist
        ValidationError: If ``where`` is empty
    """
    schema, table = _write_target(table_name)
    _require_table(engine, schema, table)
    if not where:
        raise ValidationError("delete_rows requires a non-empty where mapping")

    dialect = engine.dialect
    params: dict[str, Any] = {}
    where_sql = _where_sql(dialect, where, params)
    sql = f"DELETE FROM {quote_table(dialect, schema, table)} WHERE {where_sql} RETURNING *"
    with DbSession(engine) as session:
        return session.fetch_all(sql, params)


def add_table(engine: Engine, table_name: str, columns: Sequence[Mapping[str, str]]) -> str:
    """
    Create a table from ``[{"name": "_idx", "type": "INTEGER PRIMARY KEY"}, ...]``.

    Returns:
        The qualified name of the new table

    Raises:
        ConfigurationError: If the table already exists
        ValidationError: If ``columns`` is empty
    """
    schema, table = _write_target(table_name)
    qualified = f"{schema}.{table}"
    if table_exists(engine, qualified):
        raise ConfigurationError(f'Table "{qualified}" already exists')
    if not columns:
        raise ValidationError("Must provide at least one column")

    dialect = engine.dialect
    cols = ", ".join(
        f"{quote_identifier(dialect, c['name'], 'column')} {c['type']}" for c in columns
    )
    with DbSession(engine) as session:
        session.execute_ddl(f"CREATE TABLE {quote_table(dialect, schema, table)} ({cols})")
    return qualified


def remove_table(engine: Engine, table_name: str) -> str:
    """
    Drop a table. On PostgreSQL dependent objects are dropped too (CASCADE).

    Raises:
        NotFoundError: If the table does not exist
    """
    schema, table = _write_target(table_name)
    qualified = _require_table(engine, schema, table)

    sql = f"DROP TABLE {quote_table(engine.dialect, schema, table)}"
    if engine.dialect.name == "postgresql":
        sql += " CASCADE"
    with DbSession(engine) as session:
        session.execute_ddl(sql)
    return qualified


def read_table(
    engine: Engine,
    table_name: str,
    where: Optional[Mapping[str, Any]] = None,
    limit: int = 100,
    schema: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Read up to ``limit`` rows, optionally filtered by equality on ``where``.

    Raises:
        NotFoundError: If the table does not exist
    """
    resolved, table = _read_target(table_name, schema)
    _require_table(engine, resolved, table)

    dialect = engine.dialect
    params: dict[str, Any] = {"limit": int(limit)}
    sql = f"SELECT * FROM {quote_table(dialect, resolved, table)}"
    if where:
        sql += f" WHERE {_where_sql(dialect, where, params)}"
    sql += " LIMIT :limit"

    with DbSession(engine) as session:
        return session.fetch_all(sql, params)
