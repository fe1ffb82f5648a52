"""Event emitter implementations for pipeline observability.

This module defines the abstract EventEmitter interface and concrete
implementations for different event sinks:

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The Prometheus sink lives in metrics.py. Emitter failures never propagate
into the pipeline.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from stagegate.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the orchestrator.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics (counters, histograms).
    """

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for pipeline event emitters.

    Implementations should be non-blocking and fault-tolerant: emit()
    failures should be logged, not raised.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Emit a pipeline event."""
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Events are logged at different levels based on event type: aborts at
    WARNING, errors at ERROR, everything else at INFO.

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(PipelineEvent(event_type=EventType.RELEASE, run_id="r1"))
        # Logs: INFO - Pipeline event: release for r1
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.ABORT: logging.WARNING,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: PipelineEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        log_dict = event.to_log_dict()

        self._logger.log(
            log_level,
            "Pipeline event: %s for %s",
            event.event_type.value,
            event.run_id,
            extra=log_dict,
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Failures in one emitter do not affect others.

    Example:
        >>> composite = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter()])
        >>> await composite.emit(event)  # Emits to both sinks
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: PipelineEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "run_id": event.run_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: PipelineEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Returns a LoggingEventEmitter when no sinks are requested, the single
    emitter when one is, and a CompositeEventEmitter otherwise.

    Example:
        >>> isinstance(create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter)
        True
    """
    # metrics.py imports EventEmitter from this module
    from stagegate.events.metrics import MetricsEventEmitter

    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
