"""
Structured JSON logging shared by the migration CLI and the command proxy.

Every line carries ts, level, name and message, plus the component
(migrate or serve) and, inside a proxied request, its request_id.
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

from mdmbridge.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """ISO-8601 UTC timestamps, level names and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname
        req_id = request_id_ctx.get()
        if req_id and "request_id" not in log_record:
            log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO", component: Optional[str] = None) -> logging.Logger:
    """
    Replace root handlers with one JSON handler on stdout.

    component is added to every line. For "serve", uvicorn's loggers are
    routed through the same handler and its access log is turned off
    (RequestLoggingMiddleware writes one line per request instead).
    """
    static_fields = {"component": component} if component else {}
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s", static_fields=static_fields)
    )

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    if component == "serve":
        for name in UVICORN_LOGGERS:
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers = [handler]
            uvicorn_logger.propagate = False
        logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every outbound request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line and one metrics sample per proxied request.

    The request_id is taken from an incoming X-Request-ID header when
    present and echoed back. Command handlers add udid, request_type,
    command_uuid and result through log_command_data().
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            log_data = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                "remote_addr": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            }
            log_data.update(getattr(request.state, "command_log_data", {}))
            logging.getLogger("mdmbridge.requests").log(
                _level_for(response.status_code), f"{request.method} {path}", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def log_command_data(request: Request, result: str, **fields) -> None:
    """
    Attach command identifiers and the outcome to the request log line.

    result is one of forwarded, invalid_request, build_error,
    encode_error, delivery_error. Fields that are None are dropped.
    """
    command_data = {k: v for k, v in fields.items() if v is not None}
    command_data["result"] = result
    request.state.command_log_data = command_data
