"""
OpenTelemetry Metrics

Pipeline and side-effect delivery metrics.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from .tracing import DEFAULT_SERVICE_NAME

logger = logging.getLogger(__name__)

# Global meter
_meter: Optional[metrics.Meter] = None

# Metric instruments
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

COUNTERS = {
    "http_requests_total": "Total HTTP requests",
    "opportunities_created_total": "Total opportunities created",
    "opportunity_transitions_total": "Stage transitions by kind (stage_change, won, lost, reopen)",
    "line_items_written_total": "Line item rows inserted, updated or removed",
    "side_effects_delivered_total": "Audit/activity entries delivered to collaborators",
    "side_effects_failed_total": "Audit/activity deliveries that raised",
    "outbox_processed_total": "Total outbox entries processed",
}

HISTOGRAMS = {
    "http_request_duration_seconds": ("HTTP request duration", "s"),
    "opportunity_time_in_stage_seconds": ("Time spent in a stage before leaving it", "s"),
    "outbox_processing_duration_seconds": ("Outbox processing duration", "s"),
}


def init_metrics(
    service_name: str = DEFAULT_SERVICE_NAME,
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds

    Returns:
        Configured meter
    """
    global _meter

    readers = []

    if otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        readers.append(PeriodicExportingMetricReader(
            otlp_exporter,
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)

    _meter = metrics.get_meter(service_name)

    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def _init_standard_metrics():
    """Create the application's counters and histograms."""
    meter = get_meter()

    for name, description in COUNTERS.items():
        _counters[name] = meter.create_counter(name, description=description, unit="1")

    for name, (description, unit) in HISTOGRAMS.items():
        _histograms[name] = meter.create_histogram(name, description=description, unit=unit)


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(DEFAULT_SERVICE_NAME)
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric. No-op until init_metrics has run."""
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric. No-op until init_metrics has run."""
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
