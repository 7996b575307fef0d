"""
搜索索引层指标
"""
from prometheus_client import Counter, Histogram


INDEX_OPERATIONS = Counter(
    "sf_index_operations_total",
    "Index store operations by outcome",
    ["collection", "op", "result"],
)

INDEX_PUBLISH_RETRIES = Counter(
    "sf_index_publish_retries_total",
    "Publish attempts retried after a transient failure",
    ["collection"],
)

INDEX_DEGRADED = Counter(
    "sf_index_degraded_total",
    "Operations that exhausted retries (index lags the authoritative store)",
    ["collection"],
)

INDEX_SCHEMA_VIOLATIONS = Counter(
    "sf_index_schema_violations_total",
    "Projected records rejected by schema validation",
    ["collection"],
)

INVENTORY_OVERSELL = Counter(
    "sf_inventory_oversell_total",
    "Inventory projections where reserved_quantity exceeded quantity",
    ["location_id"],
)

FANOUT_REPROJECTIONS = Counter(
    "sf_index_fanout_reprojections_total",
    "Dependent records re-projected after a referenced entity changed",
    ["reference_kind"],
)

DEFERRED_CHANGES = Counter(
    "sf_index_deferred_changes_total",
    "Changes set aside for replay after the authoritative store could not be read",
    ["entity_kind"],
)

SEARCH_QUERY_SECONDS = Histogram(
    "sf_search_query_seconds",
    "Search query latency",
    ["index"],
)

SEARCH_ERRORS = Counter(
    "sf_search_errors_total",
    "Search queries that failed",
    ["index", "error"],
)
