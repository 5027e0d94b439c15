"""Prometheus counters for flag evaluations, config reads and cache refreshes.

Metric objects are defined once at import time against the default registry.
They are observability only: no decision ever depends on them.
"""

from prometheus_client import Counter

feature_flag_evaluations_total = Counter(
    "switchboard_feature_flag_evaluations",
    "Number of feature flag evaluations performed",
    ["flag_key", "result", "strategy", "environment"],
)

runtime_config_reads_total = Counter(
    "switchboard_runtime_config_reads",
    "Number of runtime configuration reads performed",
    ["config_key", "environment", "audience", "result"],
)

cache_refresh_total = Counter(
    "switchboard_cache_refresh",
    "Snapshot refresh attempts by cache, source and outcome",
    ["cache", "source", "outcome"],
)
