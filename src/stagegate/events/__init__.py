"""Pipeline observability: events, log sink, Prometheus sink."""

from stagegate.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from stagegate.events.metrics import (
    MetricsEventEmitter,
    PipelineMetrics,
    generate_metrics_output,
    get_metrics,
)
from stagegate.events.models import EventType, PipelineEvent

__all__ = [
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "EventType",
    "LoggingEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "PipelineEvent",
    "PipelineMetrics",
    "create_event_emitter",
    "generate_metrics_output",
    "get_metrics",
]
