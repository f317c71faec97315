"""OpenTelemetry metrics and tracing for the automation engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter around and may construct :class:`AutomationMetrics`
before ``init_metrics`` runs.  When OTEL_EXPORTER_OTLP_ENDPOINT is not set
the no-op providers are used and every recording is silent.

Instruments
-----------
  automation.dispatch_total               Counter   (label: outcome)
  automation.dispatch_duration_ms         Histogram
  automation.action_failures_total        Counter   (label: action_type)
  automation.scheduler.fired_total        Counter   (label: kind=schedule|relative)
  automation.scheduler.missed_total       Counter
  automation.retroactive.rate_limited_total  Counter

Spans
-----
  automation.dispatch, automation.tick, automation.retroactive_run
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics, trace

logger = logging.getLogger(__name__)

_METER_NAME = "calendar_automation"
_TRACER_NAME = "calendar_automation"

_tracer_provider_installed: bool = False


def init_metrics(service_name: str) -> metrics.Meter:
    """Install a MeterProvider exporting over OTLP gRPC when an endpoint is configured."""
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)
    return metrics.get_meter(_METER_NAME)


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install a TracerProvider exporting over OTLP gRPC when an endpoint is configured.

    Safe to call more than once; the provider is installed only on the first
    call.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)
    if _tracer_provider_installed:
        return trace.get_tracer(_TRACER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(_TRACER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


class AutomationMetrics:
    """Lazily-created instruments for dispatch, scheduling, and retroactive runs."""

    def __init__(self) -> None:
        self.__dispatch_total: metrics.Counter | None = None
        self.__dispatch_duration: metrics.Histogram | None = None
        self.__action_failures: metrics.Counter | None = None
        self.__fired_total: metrics.Counter | None = None
        self.__missed_total: metrics.Counter | None = None
        self.__rate_limited_total: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _dispatch_total(self) -> metrics.Counter:
        if self.__dispatch_total is None:
            self.__dispatch_total = get_meter().create_counter(
                name="automation.dispatch_total",
                description="Rule dispatches by audit outcome",
                unit="dispatches",
            )
        return self.__dispatch_total

    @property
    def _dispatch_duration(self) -> metrics.Histogram:
        if self.__dispatch_duration is None:
            self.__dispatch_duration = get_meter().create_histogram(
                name="automation.dispatch_duration_ms",
                description="Time from dispatch to terminal state in milliseconds",
                unit="ms",
            )
        return self.__dispatch_duration

    @property
    def _action_failures(self) -> metrics.Counter:
        if self.__action_failures is None:
            self.__action_failures = get_meter().create_counter(
                name="automation.action_failures_total",
                description="Actions that were attempted and not applied",
                unit="actions",
            )
        return self.__action_failures

    @property
    def _fired_total(self) -> metrics.Counter:
        if self.__fired_total is None:
            self.__fired_total = get_meter().create_counter(
                name="automation.scheduler.fired_total",
                description="Time-based triggers fired by the scheduler",
                unit="triggers",
            )
        return self.__fired_total

    @property
    def _missed_total(self) -> metrics.Counter:
        if self.__missed_total is None:
            self.__missed_total = get_meter().create_counter(
                name="automation.scheduler.missed_total",
                description="Relative-offset windows that elapsed without firing",
                unit="windows",
            )
        return self.__missed_total

    @property
    def _rate_limited_total(self) -> metrics.Counter:
        if self.__rate_limited_total is None:
            self.__rate_limited_total = get_meter().create_counter(
                name="automation.retroactive.rate_limited_total",
                description="Retroactive runs refused by the cooldown",
                unit="runs",
            )
        return self.__rate_limited_total

    # -- recording helpers ----------------------------------------------------

    def record_dispatch(self, outcome: str, duration_ms: float) -> None:
        self._dispatch_total.add(1, {"outcome": outcome})
        self._dispatch_duration.record(duration_ms, {"outcome": outcome})

    def action_failed(self, action_type: str) -> None:
        self._action_failures.add(1, {"action_type": action_type})

    def scheduler_fired(self, kind: str) -> None:
        self._fired_total.add(1, {"kind": kind})

    def scheduler_missed(self) -> None:
        self._missed_total.add(1)

    def retroactive_rate_limited(self) -> None:
        self._rate_limited_total.add(1)
