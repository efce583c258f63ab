from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from threading import Lock

_request_id_var: ContextVar[str | None] = ContextVar('request_id', default=None)
_iteration_var: ContextVar[int | None] = ContextVar('iteration', default=None)

_SECRET_QUERY_RE = re.compile(r'([?&]secret=)[^&\s]*', re.IGNORECASE)


def set_request_context(request_id: str | None = None, iteration: int | None = None) -> None:
    """Set correlation context for structured log output."""
    _request_id_var.set(request_id)
    _iteration_var.set(iteration)


def get_request_id() -> str | None:
    return _request_id_var.get(None)


def get_iteration() -> int | None:
    return _iteration_var.get(None)


def mask_secrets(text: str | None) -> str:
    return _SECRET_QUERY_RE.sub(r'\1***', str(text or ''))


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': mask_secrets(record.getMessage()),
        }
        request_id = getattr(record, 'request_id', None) or _request_id_var.get(None)
        if request_id:
            payload['request_id'] = request_id
        iteration = getattr(record, 'iteration', None) or _iteration_var.get(None)
        if iteration is not None:
            payload['iteration'] = iteration
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('agent_runner')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('agent_runner.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
