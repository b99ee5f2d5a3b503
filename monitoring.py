"""Monitoring and observability setup.

Instruments are created from the OpenTelemetry API at import time and stay
no-ops until ``init_tracing`` / ``init_metrics`` install SDK providers, which
the application lifespan does when ``OTEL_ENABLED`` is set.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

from config import OTEL_EXPORTER_OTLP_ENDPOINT, SERVICE_NAME

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    tracer_provider = TracerProvider(resource=resource)
    otlp_span_exporter = OTLPSpanExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
    trace.set_tracer_provider(tracer_provider)

    logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    otlp_metric_exporter = OTLPMetricExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    otlp_metric_reader = PeriodicExportingMetricReader(
        otlp_metric_exporter,
        export_interval_millis=5000
    )

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[otlp_metric_reader]
    )
    metrics.set_meter_provider(meter_provider)

    logger.info("Metrics initialized with OTLP exporter")

    return metrics.get_meter(__name__)


meter = metrics.get_meter(__name__)

# Order lifecycle metrics
orders_created_counter = meter.create_counter(
    "storefront.orders.created",
    description="Orders created, by payment path (trusted or verification)",
    unit="1"
)

orders_completed_counter = meter.create_counter(
    "storefront.orders.completed",
    description="Orders whose payment was settled",
    unit="1"
)

orders_cancelled_counter = meter.create_counter(
    "storefront.orders.cancelled",
    description="Orders cancelled, by reason (expired, user, settlement_failed, scheduling_failed, notification_failed)",
    unit="1"
)

order_total_histogram = meter.create_histogram(
    "storefront.orders.total",
    description="Order total amount",
    unit="USD"
)

# Cart metrics
cart_additions_counter = meter.create_counter(
    "storefront.cart.additions",
    description="Total number of items added to cart",
    unit="1"
)

cart_cleanup_removals_counter = meter.create_counter(
    "storefront.cart.cleanup_removals",
    description="Cart lines removed because the product ran out of stock",
    unit="1"
)

# Background job metrics
jobs_processed_counter = meter.create_counter(
    "storefront.jobs.processed",
    description="Background jobs processed, by queue and outcome",
    unit="1"
)

job_duration_histogram = meter.create_histogram(
    "storefront.jobs.duration",
    description="Background job handler duration",
    unit="s"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "storefront.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)
