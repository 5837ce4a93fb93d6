"""
Per-mirror operation queue and debounced flush.

State machine, one instance per mirror:

    IDLE -> (first mutation) -> PENDING -> (debounce elapses) -> FLUSHING -> IDLE

- Only one timer is armed at a time. Mutations arriving while PENDING do not
  restart it: the window is measured from the first mutation of the batch.
- On flush the queue is drained and the timer cleared under the lock, before
  any I/O. A mutation arriving during the I/O starts a new PENDING cycle.
- Deletes are issued before saves; the two statements are not coupled by a
  transaction and each is attempted regardless of the other's outcome.
- Failed batches are not retried or re-queued. They are logged, counted and
  handed to ``on_error`` if one was given.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, ContextManager, Optional, Protocol

from .db.gateway import PersistenceGateway
from .db.metrics import observe_flush
from .models import FlushBatch, FlushResult, OperationType, PendingOperation, serialize_row

logger = logging.getLogger(__name__)

FlushErrorHandler = Callable[[FlushBatch, Exception], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def start_thread_timer(seconds: float, callback: Callable[[], None]) -> threading.Timer:
    # Non-daemon: interpreter shutdown waits for an armed flush instead of
    # dropping the pending batch.
    timer = threading.Timer(seconds, callback)
    timer.daemon = False
    timer.start()
    return timer


class OperationQueue:
    """
    Latest pending operation per row.

    Keyed by the row object itself (not its identity value), so a removed
    row's DELETE and the SAVE of whichever row takes over its position never
    collapse into one entry. A later operation on the same row replaces the
    earlier one.
    """

    def __init__(self) -> None:
        self._ops: dict[int, PendingOperation] = {}

    def put(self, row: Any, op_type: OperationType) -> None:
        # The entry holds the row, so id(row) cannot be reused while queued.
        self._ops[id(row)] = PendingOperation(op_type=op_type, row=row)

    def get(self, row: Any) -> Optional[PendingOperation]:
        return self._ops.get(id(row))

    def drain(self) -> list[PendingOperation]:
        ops = list(self._ops.values())
        self._ops.clear()
        return ops

    def __len__(self) -> int:
        return len(self._ops)

    def __bool__(self) -> bool:
        return bool(self._ops)


class BatchScheduler:
    """
    Coalesces row operations and flushes them to the gateway after a fixed
    debounce window.

    Usage:
        scheduler = BatchScheduler(gateway, "tk", "info", id_column="_idx")
        scheduler.enqueue(row, OperationType.SAVE)   # arms the timer
        ...
        scheduler.close()                            # flushes what is left
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        schema: str,
        table: str,
        *,
        id_column: str,
        debounce_s: float = 0.5,
        lock: Optional[ContextManager] = None,
        timer_factory: Optional[TimerFactory] = None,
        on_error: Optional[FlushErrorHandler] = None,
    ) -> None:
        self.gateway = gateway
        self.schema = schema
        self.table = table
        self.id_column = id_column
        self.debounce_s = debounce_s
        self.on_error = on_error
        self._lock = lock if lock is not None else threading.RLock()
        self._timer_factory = timer_factory or start_thread_timer
        self._queue = OperationQueue()
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._closed = threading.Event()

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._timer is not None

    def enqueue(self, row: Any, op_type: OperationType) -> None:
        """
        Record ``op_type`` for ``row`` and arm the timer if none is armed.
        """
        with self._lock:
            self._queue.put(row, op_type)
            if self._timer is not None or self._closed.is_set():
                return

            self._generation += 1
            generation = self._generation
            self._timer = self._timer_factory(self.debounce_s, lambda: self._fire(generation))
            logger.debug("Armed %.3fs flush timer for %s", self.debounce_s, self.qualified_name)

    def flush(self) -> FlushResult:
        """
        Drain the queue now and submit it. Cancels an armed timer.

        Never raises for gateway failures; they are reported in the result
        and through ``on_error``.
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            batches = self._drain_locked()
        return self._submit(batches)

    def close(self) -> FlushResult:
        """Stop arming timers and flush whatever is still queued."""
        self._closed.set()
        return self.flush()

    def _fire(self, generation: int) -> None:
        try:
            with self._lock:
                # A flush() that already took this cycle's work leaves nothing to do.
                if generation != self._generation or self._timer is None:
                    return
                batches = self._drain_locked()
            self._submit(batches)
        except Exception:
            logger.exception("Timed flush of %s failed", self.qualified_name)

    def _drain_locked(self) -> list[FlushBatch]:
        # Caller holds the lock. Payloads are built here so the rows' state
        # is captured before any other thread can touch them again.
        self._timer = None
        ops = self._queue.drain()

        saves = [serialize_row(op.row, self.id_column) for op in ops if op.op_type == OperationType.SAVE]
        deletes = [op.row[self.id_column] for op in ops if op.op_type == OperationType.DELETE]

        batches = []
        if deletes:
            batches.append(FlushBatch(self.schema, self.table, OperationType.DELETE, deletes))
        if saves:
            batches.append(FlushBatch(self.schema, self.table, OperationType.SAVE, saves))
        return batches

    def _submit(self, batches: list[FlushBatch]) -> FlushResult:
        result = FlushResult()
        if not batches:
            return result

        start_time = time.monotonic()
        for batch in batches:
            try:
                if batch.op_type == OperationType.DELETE:
                    self.gateway.delete_by_identity(batch.schema, batch.table, batch.payload)
                    result.deleted += len(batch.payload)
                else:
                    self.gateway.upsert_by_identity(batch.schema, batch.table, batch.payload)
                    result.saved += len(batch.payload)
            except Exception as exc:
                result.failed.append((batch, exc))
                self._report(batch, exc)

        status = "success" if result.ok else "error"
        observe_flush(self.qualified_name, status, result.saved, result.deleted)
        logger.info(
            "Flushed %s: %d saved, %d deleted, %d failed batch(es) in %.3fs",
            self.qualified_name,
            result.saved,
            result.deleted,
            len(result.failed),
            time.monotonic() - start_time,
        )
        return result

    def _report(self, batch: FlushBatch, exc: Exception) -> None:
        logger.error(
            "Dropped %s batch of %d row(s) for %s after gateway failure",
            batch.op_type.value,
            len(batch.payload),
            self.qualified_name,
            exc_info=exc,
        )
        if self.on_error is None:
            return
        try:
            self.on_error(batch, exc)
        except Exception:
            logger.exception("on_error handler raised for %s", self.qualified_name)
