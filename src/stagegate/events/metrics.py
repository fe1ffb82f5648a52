"""Prometheus metrics for pipeline observability.

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format.

Metrics Defined:
- stagegate_runs_started_total: Counter of runs started
- stagegate_runs_finished_total: Counter of finished runs by outcome
- stagegate_runs_aborted_total: Counter of aborted runs by stage and failure kind
- stagegate_run_duration_seconds: Histogram of run duration
- stagegate_runs_by_stage: Gauge of active runs per stage
- stagegate_quality_checks_total: Counter of quality-gate checks by name and status
- stagegate_commits_total: Counter of task commits
- stagegate_approvals_total: Counter of resolved approvals by stage and decision

MetricsEventEmitter keeps these up to date from pipeline events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from stagegate.events.emitter import EventEmitter
from stagegate.events.models import EventType, PipelineEvent
from stagegate.state.models import STAGE_ORDER


logger = logging.getLogger(__name__)


# Runs wait on humans, so durations range from minutes to days
DEFAULT_DURATION_BUCKETS = (
    60.0,
    300.0,
    900.0,
    1800.0,
    3600.0,
    4 * 3600.0,
    12 * 3600.0,
    24 * 3600.0,
    3 * 24 * 3600.0,
    7 * 24 * 3600.0,
)


class PipelineMetrics:
    """Container for all pipeline Prometheus metrics.

    Pass a custom registry in tests to keep metric state isolated.

    Example:
        >>> metrics = PipelineMetrics(registry=CollectorRegistry())
        >>> metrics.record_run_started()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_started_total = Counter(
            "stagegate_runs_started_total",
            "Total number of pipeline runs started",
            registry=self.registry,
        )

        self.runs_finished_total = Counter(
            "stagegate_runs_finished_total",
            "Total number of pipeline runs that reached a terminal state",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.runs_aborted_total = Counter(
            "stagegate_runs_aborted_total",
            "Total number of aborted or abandoned runs",
            labelnames=["stage", "failure_kind"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "stagegate_run_duration_seconds",
            "Time from run start to terminal state in seconds",
            labelnames=["outcome"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.runs_by_stage = Gauge(
            "stagegate_runs_by_stage",
            "Current number of active runs in each stage",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.quality_checks_total = Counter(
            "stagegate_quality_checks_total",
            "Quality-gate checks executed, by check and status",
            labelnames=["check", "status"],
            registry=self.registry,
        )

        self.commits_total = Counter(
            "stagegate_commits_total",
            "Total number of task commits",
            registry=self.registry,
        )

        self.approvals_total = Counter(
            "stagegate_approvals_total",
            "Resolved approval requests, by stage and decision",
            labelnames=["stage", "decision"],
            registry=self.registry,
        )

        for stage in STAGE_ORDER:
            self.runs_by_stage.labels(stage=stage.value).set(0)

    def record_run_started(self, stage: str = "intake") -> None:
        self.runs_started_total.inc()
        self.runs_by_stage.labels(stage=stage).inc()

    def record_stage_change(self, from_stage: Optional[str], to_stage: Optional[str]) -> None:
        if from_stage and to_stage and from_stage == to_stage:
            return
        if from_stage:
            self.runs_by_stage.labels(stage=from_stage).dec()
        if to_stage:
            self.runs_by_stage.labels(stage=to_stage).inc()

    def record_run_finished(
        self,
        outcome: str,
        stage: Optional[str],
        duration_seconds: Optional[float] = None,
    ) -> None:
        self.runs_finished_total.labels(outcome=outcome).inc()
        if stage:
            self.runs_by_stage.labels(stage=stage).dec()
        if duration_seconds is not None:
            self.run_duration_seconds.labels(outcome=outcome).observe(duration_seconds)

    def record_abort(self, stage: str, failure_kind: str) -> None:
        self.runs_aborted_total.labels(stage=stage, failure_kind=failure_kind).inc()


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text exposition for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - RUN_STARTED: runs started, stage gauge
    - STAGE_TRANSITION: stage gauge
    - QUALITY_GATE: per-check counters
    - COMMIT: commit counter
    - APPROVAL_RESOLVED: approval counter
    - RELEASE / ABORT: finished counter, duration, stage gauge
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            self._dispatch(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "run_id": event.run_id},
            )

    def _dispatch(self, event: PipelineEvent) -> None:
        details = event.details
        if event.event_type == EventType.RUN_STARTED:
            self._metrics.record_run_started(event.stage or "intake")
        elif event.event_type == EventType.STAGE_TRANSITION:
            if not details.get("terminal"):
                self._metrics.record_stage_change(details.get("from_stage"), details.get("to_stage"))
            else:
                # Terminal transitions leave the gauge to RELEASE/ABORT
                self._metrics.record_stage_change(details.get("from_stage"), None)
                self._metrics.runs_by_stage.labels(stage=details["to_stage"]).inc()
        elif event.event_type == EventType.QUALITY_GATE:
            for check in details.get("checks", []):
                self._metrics.quality_checks_total.labels(
                    check=check["name"], status=check["status"]
                ).inc()
        elif event.event_type == EventType.COMMIT:
            self._metrics.commits_total.inc()
        elif event.event_type == EventType.APPROVAL_RESOLVED:
            self._metrics.approvals_total.labels(
                stage=event.stage or "unknown",
                decision=details.get("decision", "unknown"),
            ).inc()
        elif event.event_type == EventType.RELEASE:
            self._metrics.record_run_finished(
                "released", event.stage, details.get("duration_seconds")
            )
        elif event.event_type == EventType.ABORT:
            outcome = details.get("outcome", "aborted")
            self._metrics.record_abort(
                event.stage or "unknown", details.get("failure_kind") or "unknown"
            )
            self._metrics.record_run_finished(outcome, event.stage, details.get("duration_seconds"))
