from .registry import (
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
    MIRROR_FLUSH_TOTAL,
    MIRROR_FLUSHED_ROWS_TOTAL,
)

__all__ = [
    "DB_WRITE_TOTAL",
    "DB_WRITE_LATENCY_SECONDS",
    "MIRROR_FLUSH_TOTAL",
    "MIRROR_FLUSHED_ROWS_TOTAL",
]
