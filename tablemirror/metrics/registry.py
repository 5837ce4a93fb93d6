from prometheus_client import Counter, Histogram

DB_WRITE_TOTAL = Counter(
    "tablemirror_db_write_total",
    "Batched write statements issued against the database",
    ["table", "op_type", "status"],
)

DB_WRITE_LATENCY_SECONDS = Histogram(
    "tablemirror_db_write_latency_seconds",
    "Latency of batched write statements",
    ["table", "op_type"],
)

MIRROR_FLUSH_TOTAL = Counter(
    "tablemirror_flush_total",
    "Debounced flushes of a table mirror's operation queue",
    ["table", "status"],
)

MIRROR_FLUSHED_ROWS_TOTAL = Counter(
    "tablemirror_flushed_rows_total",
    "Rows submitted by mirror flushes, per operation type",
    ["table", "op_type"],
)
