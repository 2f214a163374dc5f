"""
Telemetry service for structured logging and observability.

Logs go to stdout as one JSON object per line, carrying the current request
id when there is one. Tracing is exported over OTLP when an endpoint is
configured. Metrics are emitted as structured debug log entries.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from middleware.request_id import request_id_var


class JSONFormatter(logging.Formatter):
    """
    Log formatter that renders each record as a JSON object.

    Every entry has timestamp, level, message, logger and request_id.
    Fields passed as ``extra={"extra_data": {...}}`` are merged in at the
    top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": request_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data.update(extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class TelemetryService:
    """
    Process-wide logging, tracing and metrics.

    Attributes:
        settings: Application settings (log_level, otel_endpoint, otel_service_name)
        tracer: OpenTelemetry tracer, or None when tracing is disabled
    """

    def __init__(self, settings: Optional[Any] = None):
        self.settings = settings
        self.tracer = None
        self._logger = logging.getLogger("telemetry")
        self._setup_logging()
        self._setup_tracing()

    def _setup_logging(self) -> None:
        log_level_str = getattr(self.settings, "log_level", None) or "INFO"
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        stdout_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(stdout_handler)

        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str}
        })

    def _setup_tracing(self) -> None:
        otel_endpoint = getattr(self.settings, "otel_endpoint", None)
        if not otel_endpoint:
            self._logger.debug("OpenTelemetry endpoint not configured, tracing disabled")
            return

        service_name = getattr(self.settings, "otel_service_name", "asset-session-coordinator")
        provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint)))
        trace.set_tracer_provider(provider)
        self.tracer = trace.get_tracer(service_name)

        self._logger.info("OpenTelemetry tracing configured", extra={
            "extra_data": {"otel_endpoint": otel_endpoint, "service_name": service_name}
        })

    def log_audit_event(
        self,
        event_type: str,
        user_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a lifecycle event worth keeping an audit trail of.

        Args:
            event_type: Kind of event (e.g. "session_lifecycle")
            user_id: User the event belongs to
            resource_type: Type of resource acted upon
            resource_id: Identifier of the resource
            action: What happened ("create", "end", "delete")
            details: Extra context for the entry
        """
        audit_data = {
            "audit_event": True,
            "event_type": event_type,
            "user_id": user_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
        }
        if details:
            audit_data["details"] = details

        self._logger.info(
            f"Audit: {event_type} - {action} on {resource_type}",
            extra={"extra_data": audit_data}
        )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a metric sample as a structured debug entry."""
        metric_data: Dict[str, Any] = {"metric_name": name, "metric_value": value}
        if tags:
            metric_data["tags"] = tags
        self._logger.debug(f"Metric: {name}={value}", extra={"extra_data": metric_data})

    def create_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Start a span as a context manager.

        Returns a no-op context manager when tracing is disabled, so callers
        never need to check.
        """
        if self.tracer is None:
            return _NoOpSpanContextManager()
        return self.tracer.start_as_current_span(name, attributes=attributes)


class _NoOpSpanContextManager:
    """Stand-in span used while tracing is disabled."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass


_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """The process telemetry service, or None before initialize_telemetry()."""
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service


def start_span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """
    Span context manager from the process telemetry service.

    A no-op span is returned before initialize_telemetry() has run.
    """
    if _telemetry_service is None:
        return _NoOpSpanContextManager()
    return _telemetry_service.create_span(name, attributes)
