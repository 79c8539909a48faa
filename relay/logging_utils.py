"""
Structured JSON logging for the relay.

Every log line is a JSON object with ``ts``, ``level``, ``logger`` and
``message``; lines emitted while a request is in flight also carry its
``request_id``. One access line per request is written by
RequestLoggingMiddleware under the ``relay.requests`` logger.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from relay.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64

# Paths that would only add noise to the access log and the request metrics
QUIET_PATHS = {"/metrics", "/health/live"}

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

access_logger = logging.getLogger("relay.requests")


class RelayJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC millisecond timestamp and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_record.setdefault("ts", stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"))
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler
    on stdout.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RelayJsonFormatter("%(ts)s %(level)s %(logger)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _incoming_request_id(request: Request) -> str:
    """Reuse a caller-supplied id when it is short and printable, else mint one."""
    supplied = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if supplied and len(supplied) <= MAX_REQUEST_ID_LENGTH and supplied.isprintable():
        return supplied
    return uuid.uuid4().hex


def _session_tenant(request: Request) -> Optional[str]:
    # The session middleware sits inside this one, so the session is only
    # populated on the request scope after call_next has run.
    session = request.scope.get("session")
    if session and session.get("authenticated"):
        return session.get("tenant")
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log one structured line per HTTP request and record request metrics.

    Log keys:
    - request_id: from the X-Request-ID header, or generated
    - method, path, status
    - latency_ms: request processing time in milliseconds
    - tenant: the session's tenant, when authenticated
    - store: durable store state, on requests that ended degraded (>= 500)

    POST /api/messages adds ``result`` (persisted, queued, validation_error
    or rejected) through log_post_data.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _incoming_request_id(request)
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            elapsed = time.perf_counter() - started

            path = request.url.path
            if path not in QUIET_PATHS:
                record_http_request(request.method, path, response.status_code, elapsed)
                self._log(request, response, request_id, elapsed)
            return response
        finally:
            request_id_ctx.reset(token)

    def _log(self, request: Request, response: Response, request_id: str, elapsed: float) -> None:
        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round(elapsed * 1000, 2),
        }

        tenant = _session_tenant(request)
        if tenant is not None:
            fields["tenant"] = tenant
        fields.update(getattr(request.state, "post_log_data", {}))

        if response.status_code >= 500:
            relay = getattr(request.app.state, "relay", None)
            if relay is not None:
                fields["store"] = relay.store.state.value
            access_logger.error("Request completed", extra=fields)
        elif response.status_code >= 400:
            access_logger.warning("Request completed", extra=fields)
        else:
            access_logger.info("Request completed", extra=fields)


def log_post_data(request: Request, tenant: Optional[str] = None, result: Optional[str] = None) -> None:
    """Attach the outcome of a message post to the request's access log line."""
    post_data = {}
    if tenant is not None:
        post_data["tenant"] = tenant
    if result is not None:
        post_data["result"] = result
    request.state.post_log_data = post_data
