import logging
import uuid
import contextvars
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Request id and session key contextvars, read by the log filter and by telemetry spans
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
session_key_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("session_key", default=None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def get_session_key() -> Optional[str]:
    return session_key_var.get()


def bind_session_key(session_key: Optional[str]) -> contextvars.Token:
    """Attach a (sanitized) session key to the current context for logging."""
    return session_key_var.set(session_key)


class RequestContextLogFilter(logging.Filter):
    """
    Logging filter that injects 'request_id' and 'session_key' onto every LogRecord.
    Formatters can include %(request_id)s and %(session_key)s.
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        record.session_key = get_session_key() or "-"
        return True


def add_request_context_log_filter() -> None:
    """
    Attach the RequestContextLogFilter to the root handlers and common web loggers.
    """
    root = logging.getLogger()
    if any(isinstance(f, RequestContextLogFilter) for f in root.filters):
        return
    filt = RequestContextLogFilter()
    root.addFilter(filt)
    # Filters on a logger do not see records propagated from child loggers
    for handler in root.handlers:
        handler.addFilter(filt)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        logging.getLogger(name).addFilter(filt)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    ASGI middleware that:
    - Reads a request id from the incoming header (configurable name), generating one if missing
    - Stores it on request.state and in a contextvar for logging and spans
    - Echoes the request id back in the response header
    """

    def __init__(self, app, header_name: str = "X-Request-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[self.header_name] = request_id
        return response
