from __future__ import annotations

import logging

from ..metrics.registry import (
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
    MIRROR_FLUSH_TOTAL,
    MIRROR_FLUSHED_ROWS_TOTAL,
)

logger = logging.getLogger(__name__)


def observe_db_write(table: str, op_type: str, status: str, latency_s: float) -> None:
    """Record one write statement. Metric failures are logged, never raised."""
    try:
        DB_WRITE_TOTAL.labels(table=table, op_type=op_type, status=status).inc()
        DB_WRITE_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)
    except Exception:
        logger.debug("Failed to record db write metric for %s", table, exc_info=True)


def observe_flush(table: str, status: str, saved: int, deleted: int) -> None:
    """Record one mirror flush and the number of rows it submitted."""
    try:
        MIRROR_FLUSH_TOTAL.labels(table=table, status=status).inc()
        if saved:
            MIRROR_FLUSHED_ROWS_TOTAL.labels(table=table, op_type="save").inc(saved)
        if deleted:
            MIRROR_FLUSHED_ROWS_TOTAL.labels(table=table, op_type="delete").inc(deleted)
    except Exception:
        logger.debug("Failed to record flush metric for %s", table, exc_info=True)
