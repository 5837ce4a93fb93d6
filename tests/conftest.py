from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any, Sequence

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from tablemirror.config import MirrorConfig
from tablemirror.errors import GatewayError
from tablemirror.mirror import TableMirror

SCHEMAS = ("tk", "public")

INFO_COLUMNS = '"_idx" INTEGER PRIMARY KEY, "name" TEXT, "extra" JSON'


@pytest.fixture
def engine() -> Iterator[Engine]:
    """
    In-memory SQLite engine with ``tk`` and ``public`` attached as schemas.

    StaticPool keeps a single connection, so every session (and the timer
    thread) sees the same in-memory databases. We fail fast if the schemas
    cannot be attached, so failures are actionable.
    """
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(eng, "connect")
    def _attach_schemas(dbapi_conn, _record) -> None:
        for schema in SCHEMAS:
            dbapi_conn.execute(f"ATTACH DATABASE ':memory:' AS {schema}")

    try:
        with eng.connect() as conn:
            conn.exec_driver_sql("SELECT 1 FROM tk.sqlite_master")
    except Exception as exc:  # pragma: no cover
        pytest.fail(f"Could not attach test schemas to SQLite: {exc}", pytrace=False)

    yield eng
    eng.dispose()


@pytest.fixture
def table_factory(engine: Engine) -> Callable[..., str]:
    """
    Factory fixture creating tables in an attached schema.

    Usage:
        table = table_factory("info", '"_idx" INTEGER PRIMARY KEY, "name" TEXT')
    """

    def _create(name: str, columns_sql: str, schema: str = "tk") -> str:
        with engine.begin() as conn:
            conn.exec_driver_sql(f'CREATE TABLE "{schema}"."{name}" ({columns_sql})')
        return f"{schema}.{name}"

    return _create


@pytest.fixture
def seed(engine: Engine) -> Callable[[str, Sequence[dict[str, Any]]], None]:
    """Insert rows directly, JSON-encoding dict/list values."""

    def _seed(qualified: str, rows: Sequence[dict[str, Any]]) -> None:
        schema, table = qualified.split(".")
        cols = list(rows[0])
        col_sql = ", ".join(f'"{c}"' for c in cols)
        placeholders = ", ".join(f":{c}" for c in cols)
        params = [
            {c: json.dumps(v) if isinstance(v, (dict, list)) else v for c, v in row.items()}
            for row in rows
        ]
        with engine.begin() as conn:
            conn.execute(
                text(f'INSERT INTO "{schema}"."{table}" ({col_sql}) VALUES ({placeholders})'),
                params,
            )

    return _seed


@pytest.fixture
def info_table(table_factory: Callable[..., str], seed) -> str:
    """
    ``tk.info`` seeded with the two-row example used across mirror tests.
    """
    table = table_factory("info", INFO_COLUMNS)
    seed(
        table,
        [
            {"_idx": 0, "name": "a", "extra": {"filesInfo": {"start": "monday"}}},
            {"_idx": 1, "name": "b", "extra": {"tags": ["x"]}},
        ],
    )
    return table


class FakeGateway:
    """
    In-memory PersistenceGateway that records every call.

    Tables are keyed by "schema.table"; rows are merged on ``id_column`` the
    way an upsert would. Add "upsert" or "delete" to ``fail_on`` to make that
    call raise GatewayError.
    """

    def __init__(self, tables: dict[str, list[dict[str, Any]]], id_column: str = "_idx") -> None:
        self.tables = {name: [dict(r) for r in rows] for name, rows in tables.items()}
        self.id_column = id_column
        self.calls: list[tuple[str, Any]] = []
        self.fail_on: set[str] = set()
        self.before_write: Callable[[str], None] | None = None
        self.closed = False

    @property
    def upserts(self) -> list[list[dict[str, Any]]]:
        return [payload for name, payload in self.calls if name == "upsert"]

    @property
    def deletes(self) -> list[list[Any]]:
        return [payload for name, payload in self.calls if name == "delete"]

    def table_exists(self, qualified_name: str) -> bool:
        return qualified_name in self.tables

    def load(self, schema: str, table: str) -> list[dict[str, Any]]:
        self.calls.append(("load", f"{schema}.{table}"))
        return [dict(r) for r in self.tables[f"{schema}.{table}"]]

    def upsert_by_identity(self, schema: str, table: str, rows) -> int:
        self.calls.append(("upsert", [dict(r) for r in rows]))
        if self.before_write is not None:
            self.before_write("upsert")
        if "upsert" in self.fail_on:
            raise GatewayError("upsert rejected")

        by_id = {r[self.id_column]: r for r in self.tables[f"{schema}.{table}"]}
        for row in rows:
            by_id.setdefault(row[self.id_column], {}).update(row)
        self.tables[f"{schema}.{table}"] = sorted(by_id.values(), key=lambda r: r[self.id_column])
        return len(rows)

    def delete_by_identity(self, schema: str, table: str, identities) -> int:
        self.calls.append(("delete", list(identities)))
        if self.before_write is not None:
            self.before_write("delete")
        if "delete" in self.fail_on:
            raise GatewayError("delete rejected")

        stored = self.tables[f"{schema}.{table}"]
        kept = [r for r in stored if r[self.id_column] not in set(identities)]
        self.tables[f"{schema}.{table}"] = kept
        return len(stored) - len(kept)

    def close(self) -> None:
        self.closed = True


class ManualTimer:
    def __init__(self, seconds: float, callback: Callable[[], None]) -> None:
        self.seconds = seconds
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        if not self.cancelled:
            self.callback()


class ManualTimers:
    """Timer factory whose timers only fire when the test says so."""

    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    def __call__(self, seconds: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(seconds, callback)
        self.timers.append(timer)
        return timer

    @property
    def armed(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_all(self) -> None:
        for timer in self.armed:
            timer.fire()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway(
        {
            "tk.info": [
                {"_idx": 0, "name": "a"},
                {"_idx": 1, "name": "b"},
            ]
        }
    )


@pytest.fixture
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture
def mirror_factory(fake_gateway: FakeGateway, timers: ManualTimers) -> Callable[..., TableMirror]:
    """Build mirrors over ``fake_gateway`` driven by manual timers."""

    def _create(table: str = "info", **kwargs: Any) -> TableMirror:
        on_flush_error = kwargs.pop("on_flush_error", None)
        config = MirrorConfig(connection="sqlite://", table=table, **kwargs)
        return TableMirror(
            config,
            gateway=fake_gateway,
            timer_factory=timers,
            on_flush_error=on_flush_error,
        )

    return _create


@pytest.fixture
def mirror(mirror_factory: Callable[..., TableMirror]) -> TableMirror:
    return mirror_factory()
