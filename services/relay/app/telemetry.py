import os
from contextlib import contextmanager
from typing import Dict, Optional

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.trace import Tracer, Span
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from services.relay.app.context import get_request_id, get_session_key


_OTEL_ENABLED_ENV = "RELAY_OTEL_ENABLED"
_OTEL_EXPORTER_ENV = "RELAY_OTEL_EXPORTER"  # "stdout" (default) | "otlp"
_OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

_SERVICE_NAME = "question-relay"

_provider: Optional[TracerProvider] = None
_tracer: Optional[Tracer] = None


def otel_enabled() -> bool:
    """
    Returns True when telemetry is enabled via env (default False).
    """
    return os.getenv(_OTEL_ENABLED_ENV, "false").lower() in ("1", "true", "yes")


def _init_provider() -> None:
    global _provider, _tracer

    resource = Resource.create({"service.name": _SERVICE_NAME})
    provider = TracerProvider(resource=resource)

    exporter_selection = os.getenv(_OTEL_EXPORTER_ENV, "stdout").lower()
    endpoint = os.getenv(_OTLP_ENDPOINT_ENV)
    if exporter_selection == "otlp" and endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = trace.get_tracer(_SERVICE_NAME)


def start_telemetry(app: FastAPI) -> None:
    """
    Initialize the provider and instrument the app. Called from the
    lifespan; a no-op when telemetry is disabled.
    """
    if not otel_enabled():
        return
    _init_provider()
    try:
        FastAPIInstrumentor.instrument_app(app)
    except Exception:
        # Do not fail startup if instrumentation raises
        pass


def stop_telemetry() -> None:
    global _provider, _tracer
    try:
        if _provider is not None:
            _provider.shutdown()
    finally:
        _provider = None
        _tracer = None


@contextmanager
def span(name: str, attributes: Optional[Dict[str, object]] = None):
    """
    Context manager that starts a span if telemetry is enabled; otherwise acts as a no-op.
    Adds request_id and session_key attributes when available.
    """
    if not otel_enabled() or _tracer is None:
        yield None
        return

    attrs: Dict[str, object] = {}
    if attributes:
        attrs.update(attributes)
    request_id = get_request_id()
    if request_id and "request_id" not in attrs:
        attrs["request_id"] = request_id
    session_key = get_session_key()
    if session_key and "session_key" not in attrs:
        attrs["session_key"] = session_key

    with _tracer.start_as_current_span(name) as s:
        for k, v in attrs.items():
            try:
                s.set_attribute(k, v)
            except Exception:
                pass
        yield s


def enrich_current_span(attributes: Dict[str, object]) -> None:
    """
    Adds attributes onto the current span when enabled and recording.
    """
    if not otel_enabled():
        return
    current: Span = trace.get_current_span()
    if current and current.is_recording():
        for k, v in attributes.items():
            try:
                current.set_attribute(k, v)
            except Exception:
                pass
