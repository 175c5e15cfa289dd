"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("featureflag_engine", version="0.1.0")

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Total number of feature flag evaluations",
    unit="1",
)

flag_cache_hits_total = _meter.create_counter(
    name="flag_cache_hits_total",
    description="Total number of evaluation cache hits",
    unit="1",
)

flag_cache_misses_total = _meter.create_counter(
    name="flag_cache_misses_total",
    description="Total number of evaluation cache misses",
    unit="1",
)

flag_registry_errors_total = _meter.create_counter(
    name="flag_registry_errors_total",
    description="Total number of flag registry lookup failures",
    unit="1",
)
