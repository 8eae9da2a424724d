"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0_featureflag_client", version="0.1.0")

evaluations_total = _meter.create_counter(
    name="featureflag_evaluations_total",
    description="Total number of flag evaluations",
    unit="1",
)

events_dropped_total = _meter.create_counter(
    name="featureflag_events_dropped_total",
    description="Total number of analytics events dropped because the queue was full",
    unit="1",
)

event_deliveries_total = _meter.create_counter(
    name="featureflag_event_deliveries_total",
    description="Total number of analytics event payload deliveries",
    unit="1",
)
