from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import MetaData, Table, bindparam, create_engine, inspect, select, text
from sqlalchemy.engine import URL, Engine

from ..config import DEFAULT_ID_COLUMN, DEFAULT_READ_SCHEMA, DbConfig, split_table_name
from ..errors import GatewayError
from .helpers import quote_identifier, quote_table
from .metrics import observe_db_write
from .session import DbSession

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    """
    What a TableMirror needs from storage.

    Implementations raise GatewayError when the backing store rejects a call.
    """

    def table_exists(self, qualified_name: str) -> bool:
        """True if "schema.table" exists."""
        ...

    def load(self, schema: str, table: str) -> list[dict[str, Any]]:
        """Every row of the table, unfiltered, in natural storage order."""
        ...

    def upsert_by_identity(self, schema: str, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert-or-merge ``rows`` in one transaction, keyed on the identity column."""
        ...

    def delete_by_identity(self, schema: str, table: str, identities: Sequence[Any]) -> int:
        """Delete every row whose identity is in ``identities`` in one statement."""
        ...

    def close(self) -> None:
        ...


def make_engine(connection: Any, echo: bool = False) -> Engine:
    """
    Build an Engine from a URL string, a SQLAlchemy URL or a DbConfig.
    An Engine is returned unchanged.
    """
    if isinstance(connection, Engine):
        return connection
    if isinstance(connection, DbConfig):
        connection = connection.url()
    if isinstance(connection, (str, URL)):
        return create_engine(connection, echo=echo is True, pool_pre_ping=True)
    raise TypeError(
        "connection must be a URL string, sqlalchemy URL, Engine or DbConfig, "
        f"got {type(connection).__name__}"
    )


class SqlGateway:
    """
    PersistenceGateway over a SQLAlchemy Engine.

    Upserts are multi-row INSERTs, one per distinct key set, with the
    dialect's conflict clause:
    ``ON CONFLICT (id) DO UPDATE`` for PostgreSQL and SQLite,
    ``ON DUPLICATE KEY UPDATE`` for MySQL/MariaDB. The identity column must
    carry a primary key or unique constraint.

    Each call runs in its own DbSession; any failure is re-raised as
    GatewayError with the original exception chained.
    """

    def __init__(
        self,
        engine: Engine,
        id_column: str = DEFAULT_ID_COLUMN,
        owns_engine: bool = False,
    ) -> None:
        self.engine = engine
        self.id_column = id_column
        self._owns_engine = owns_engine

    @classmethod
    def from_connection(
        cls,
        connection: Any,
        id_column: str = DEFAULT_ID_COLUMN,
        logging: bool = False,
    ) -> "SqlGateway":
        owns = not isinstance(connection, Engine)
        return cls(make_engine(connection, echo=logging), id_column=id_column, owns_engine=owns)

    def table_exists(self, qualified_name: str) -> bool:
        schema, table = split_table_name(qualified_name, DEFAULT_READ_SCHEMA)
        try:
            return inspect(self.engine).has_table(table, schema=schema)
        except Exception as exc:
            raise GatewayError(str(exc)) from exc

    def load(self, schema: str, table: str) -> list[dict[str, Any]]:
        try:
            # Reflection gives JSON columns their decoding result processors.
            reflected = Table(table, MetaData(), schema=schema, autoload_with=self.engine)
            with DbSession(self.engine) as session:
                rows = session.fetch_all(select(reflected))
        except Exception as exc:
            raise GatewayError(str(exc)) from exc

        logger.debug("Loaded %d rows from %s.%s", len(rows), schema, table)
        return rows

    def upsert_by_identity(self, schema: str, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        return self._write(schema, table, "upsert", lambda: self._upsert_statements(schema, table, rows))

    def delete_by_identity(self, schema: str, table: str, identities: Sequence[Any]) -> int:
        if not identities:
            return 0

        def build() -> list[tuple[Any, dict[str, Any]]]:
            dialect = self.engine.dialect
            stmt = text(
                f"DELETE FROM {quote_table(dialect, schema, table)} "
                f"WHERE {quote_identifier(dialect, self.id_column, 'id_column')} IN :ids"
            ).bindparams(bindparam("ids", expanding=True))
            return [(stmt, {"ids": list(identities)})]

        return self._write(schema, table, "delete", build)

    def close(self) -> None:
        if self._owns_engine:
            self.engine.dispose()

    def _write(self, schema: str, table: str, op_type: str, build) -> int:
        """Run every statement ``build()`` returns in one transaction."""
        start_time = time.monotonic()
        status = "success"
        qualified = f"{schema}.{table}"

        try:
            statements = build()
            with DbSession(self.engine) as session:
                return sum(session.execute(stmt, params) for stmt, params in statements)
        except Exception as exc:
            status = "error"
            raise GatewayError(str(exc)) from exc
        finally:
            observe_db_write(qualified, op_type, status, time.monotonic() - start_time)

    def _upsert_statements(
        self,
        schema: str,
        table: str,
        rows: Sequence[Mapping[str, Any]],
    ) -> list[tuple[str, dict[str, Any]]]:
        # One statement per distinct key set: an absent key must leave the
        # column to its server default (or its stored value), never NULL.
        groups: dict[frozenset, list[Mapping[str, Any]]] = {}
        for row in rows:
            groups.setdefault(frozenset(row), []).append(row)
        return [self._upsert_statement(schema, table, group) for group in groups.values()]

    def _upsert_statement(
        self,
        schema: str,
        table: str,
        rows: Sequence[Mapping[str, Any]],
    ) -> tuple[str, dict[str, Any]]:
        dialect = self.engine.dialect

        columns: list[str] = [self.id_column]
        columns.extend(key for key in rows[0] if key != self.id_column)

        quoted = {col: quote_identifier(dialect, col, "column") for col in columns}
        params: dict[str, Any] = {}
        values_sql = []
        for r, row in enumerate(rows):
            placeholders = []
            for c, col in enumerate(columns):
                name = f"r{r}_c{c}"
                params[name] = row[col]
                placeholders.append(f":{name}")
            values_sql.append(f"({', '.join(placeholders)})")

        sql = (
            f"INSERT INTO {quote_table(dialect, schema, table)} "
            f"({', '.join(quoted[col] for col in columns)}) "
            f"VALUES {', '.join(values_sql)} "
            f"{self._conflict_clause([quoted[col] for col in columns[1:]], quoted[self.id_column])}"
        )
        return sql, params

    def _conflict_clause(self, update_cols: list[str], id_col: str) -> str:
        name = self.engine.dialect.name
        if name in ("postgresql", "sqlite"):
            if not update_cols:
                return f"ON CONFLICT ({id_col}) DO NOTHING"
            sets = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_cols)
            return f"ON CONFLICT ({id_col}) DO UPDATE SET {sets}"
        if name in ("mysql", "mariadb"):
            cols = update_cols or [id_col]
            return "ON DUPLICATE KEY UPDATE " + ", ".join(f"{col} = VALUES({col})" for col in cols)
        raise GatewayError(f"Upsert is not supported for dialect {name!r}")
