from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span

from crm_access.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
STATEMENT_ATTRIBUTE_MAX = 512

_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")
_store_tracer = trace.get_tracer("crm_access.store")
_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging(level: int = logging.INFO) -> None:
    """Install trace correlation on every log record and a root handler if none exists."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_NAMESPACE: "crm",
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    logger.info(
        "telemetry started service=%s sample_ratio=%s exporting=%s",
        settings.otel_service_name,
        settings.otel_trace_sample_ratio,
        exporter is not None,
    )
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


@contextmanager
def store_span(name: str, *, statement: str, attempt: int = 0) -> Iterator[Span]:
    """Span around one store round trip; the statement text is collapsed and truncated."""
    collapsed = " ".join(statement.split())
    operation = collapsed.split(" ", 1)[0].lower() if collapsed else ""
    with _store_tracer.start_as_current_span(name) as span:
        span.set_attribute("db.system", "postgresql")
        span.set_attribute("db.operation", operation)
        span.set_attribute("db.statement", collapsed[:STATEMENT_ATTRIBUTE_MAX])
        span.set_attribute("crm.store.attempt", attempt)
        yield span


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings, skipping malformed pairs."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or next(
        (os.environ[name] for name in _ENDPOINT_ENV_VARS if os.environ.get(name)),
        None,
    )
    if not endpoint:
        logger.info("otel exporter endpoint not set; store spans stay local service=%s", settings.otel_service_name)
        return None
    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(correlated_record)
    _correlation_installed = True
