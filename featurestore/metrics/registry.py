from prometheus_client import Counter, Histogram

DB_WRITE_TOTAL = Counter(
    "featurestore_db_write_total",
    "Mutations committed (or rolled back) per table and operation.",
    ["table", "op_type", "status"],
)

DB_WRITE_LATENCY_SECONDS = Histogram(
    "featurestore_db_write_latency_seconds",
    "Time from buffering a mutation to the end of its transaction.",
    ["table", "op_type"],
)

DB_LOCK_ACQUIRE_TOTAL = Counter(
    "featurestore_db_lock_acquire_total",
    "Worker lock acquisition attempts by outcome.",
    ["resource", "outcome"],
)

SYNC_MUTATIONS_TOTAL = Counter(
    "featurestore_sync_mutations_total",
    "Rows inserted, updated or deleted by entity synchronization.",
    ["table", "action"],
)
