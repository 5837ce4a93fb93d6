from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from typing import Any, Optional

from .config import MirrorConfig
from .db.gateway import PersistenceGateway, SqlGateway
from .errors import NotFoundError
from .models import FlushResult, OperationType
from .scheduler import BatchScheduler, FlushErrorHandler, TimerFactory
from .tracking import Tracked, TrackedDict, track

logger = logging.getLogger(__name__)


class TableMirror:
    """
    In-memory mirror of one table whose rows persist themselves.

    Rows are tracked dicts: assigning or deleting anything inside a row, at
    any depth, queues a save for that row, and queued operations are written
    in one batch after ``config.debounce_ms`` of the first change.

    Each row carries a positional identity in ``config.id_column`` that always
    equals its index in the mirror. Structural edits reindex the rows behind
    them, so those rows are saved again even though their data did not change.

    Usage:
        mirror = TableMirror(MirrorConfig(connection=url, table="info"))
        mirror.get_all()[0]["extra"]["files"]["end"] = "today"
        mirror.push({"name": "new"})
        mirror.close()
    """

    def __init__(
        self,
        config: MirrorConfig,
        *,
        gateway: Optional[PersistenceGateway] = None,
        timer_factory: Optional[TimerFactory] = None,
        on_flush_error: Optional[FlushErrorHandler] = None,
    ) -> None:
        """
        Load the table and start tracking its rows.

        Raises:
            NotFoundError: If the table does not exist
            GatewayError: If the table cannot be loaded
        """
        self.config = config
        self.schema = config.schema
        self.table = config.table
        self.id_column = config.id_column

        self.gateway = gateway or SqlGateway.from_connection(
            config.connection, id_column=config.id_column, logging=config.logging
        )
        self._lock = threading.RLock()
        self._scheduler = BatchScheduler(
            self.gateway,
            self.schema,
            self.table,
            id_column=self.id_column,
            debounce_s=config.debounce_s,
            lock=self._lock,
            timer_factory=timer_factory,
            on_error=on_flush_error,
        )
        self._rows: list[TrackedDict] = []

        try:
            self._load()
        except Exception:
            if gateway is None:
                self.gateway.close()
            raise

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    def _load(self) -> None:
        if not self.gateway.table_exists(self.qualified_name):
            raise NotFoundError(f'Table "{self.qualified_name}" does not exist')

        data = self.gateway.load(self.schema, self.table)
        with self._lock:
            for i, row in enumerate(data):
                if row.get(self.id_column) is None:
                    row[self.id_column] = i
            self._rows = [self._wrap_row(row) for row in data]

        logger.info("Mirrored %d rows from %s", len(self._rows), self.qualified_name)

    def _wrap_row(self, row: Any) -> TrackedDict:
        if isinstance(row, Tracked):
            return row
        if not isinstance(row, Mapping):
            raise TypeError(f"row must be a mapping, got {type(row).__name__}")

        wrapped = track(
            dict(row),
            lambda: self._scheduler.enqueue(wrapped, OperationType.SAVE),
            self._lock,
        )
        return wrapped

    # -- reads --

    def get_all(self) -> list[TrackedDict]:
        """The live row list (not a copy)."""
        return self._rows

    @property
    def rows(self) -> list[TrackedDict]:
        return self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[TrackedDict]:
        return iter(self._rows)

    def __getitem__(self, index: int) -> TrackedDict:
        return self._rows[index]

    @property
    def pending(self) -> int:
        """Number of rows with a queued operation."""
        return self._scheduler.pending

    # -- structural edits --

    def push(self, row: Mapping[str, Any]) -> TrackedDict:
        """
        Append ``row`` with the next identity and queue it for saving.

        Returns:
            The tracked row; mutate this instance, not the one passed in.
        """
        with self._lock:
            if isinstance(row, Tracked):
                row[self.id_column] = len(self._rows)
                wrapped = row
            else:
                wrapped = self._wrap_row({**row, self.id_column: len(self._rows)})
            self._rows.append(wrapped)
            self._scheduler.enqueue(wrapped, OperationType.SAVE)
            return wrapped

    def splice(self, start: int, delete_count: Optional[int] = None, *items: Mapping[str, Any]) -> list[TrackedDict]:
        """
        Remove ``delete_count`` rows at ``start`` and insert ``items`` there.

        ``start`` may be negative (counted from the end) and is clamped to the
        row count; ``delete_count=None`` (the default) removes everything
        from ``start``, so ``splice(i)`` truncates. Pass ``delete_count=0``
        to insert without removing. Removed rows are queued for deletion,
        inserted rows for saving, and every row is then reindexed so its
        identity matches its position; rows whose identity changed are
        queued for saving as well.

        Returns:
            The removed rows
        """
        with self._lock:
            size = len(self._rows)
            if start < 0:
                start = max(size + start, 0)
            start = min(start, size)
            if delete_count is None:
                delete_count = size - start
            delete_count = max(0, min(delete_count, size - start))

            inserted = []
            for offset, item in enumerate(items):
                if isinstance(item, Tracked):
                    item[self.id_column] = start + offset
                    inserted.append(item)
                else:
                    inserted.append(self._wrap_row({**item, self.id_column: start + offset}))

            removed = self._rows[start:start + delete_count]
            self._rows[start:start + delete_count] = inserted

            for row in removed:
                self._scheduler.enqueue(row, OperationType.DELETE)
            for row in inserted:
                self._scheduler.enqueue(row, OperationType.SAVE)

            for idx, row in enumerate(self._rows):
                # Tracked write: rows whose identity changes queue a save.
                row[self.id_column] = idx

            return removed

    # -- persistence --

    def flush(self) -> FlushResult:
        """Write queued operations now instead of waiting for the timer."""
        return self._scheduler.flush()

    def close(self) -> FlushResult:
        """
        Flush what is queued, stop scheduling, and release the gateway.

        In-memory rows stay usable but are no longer persisted automatically.
        """
        result = self._scheduler.close()
        self.gateway.close()
        return result

    def __enter__(self) -> "TableMirror":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return False
