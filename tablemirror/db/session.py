from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.engine import Connection, Dialect, Engine
from sqlalchemy.sql import Executable


def _statement(sql: str | Executable) -> Executable:
    return text(sql) if isinstance(sql, str) else sql


class DbSession:
    """
    One connection and one transaction, committed on clean exit and rolled
    back when the block raises.

    Every gateway call (load, upsert, delete) runs in its own session, so a
    failed batch never leaves a half-applied transaction behind.

    Use as:
        with DbSession(engine) as session:
            session.execute("DELETE FROM tk.info WHERE _idx IN :ids", {...})
            rows = session.fetch_all(select(table))
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = None
        self._tx = None

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    def __enter__(self) -> "DbSession":
        if self._conn is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._tx is not None:
                if exc_type:
                    self._tx.rollback()
                else:
                    self._tx.commit()
        finally:
            if self._conn is not None:
                self._conn.close()

            self._conn = None
            self._tx = None

        return False

    def _connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._conn

    def execute(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a write statement and return the affected row count.
        """
        result = self._connection().execute(_statement(sql), dict(params or {}))
        try:
            if result.rowcount is None:
                raise RuntimeError(
                    "execute() received None rowcount for statement. "
                    "This may indicate a DDL statement or unsupported operation type."
                )
            return int(result.rowcount)
        finally:
            result.close()

    def execute_ddl(self, sql: str | Executable) -> None:
        """Execute a schema statement (CREATE/DROP); no row count is expected."""
        self._connection().execute(_statement(sql)).close()

    def fetch_one(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Execute a statement expected to return 0 or 1 row. Raises if more than one row.
        """
        result = self._connection().execute(_statement(sql), dict(params or {}))
        try:
            row = result.mappings().one_or_none()
            return None if row is None else dict(row)
        finally:
            result.close()

    def fetch_all(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a statement returning rows (SELECT, or a write with RETURNING).
        """
        result = self._connection().execute(_statement(sql), dict(params or {}))
        try:
            return [dict(row) for row in result.mappings()]
        finally:
            result.close()
