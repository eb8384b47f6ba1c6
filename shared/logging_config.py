import logging
import json
import time
import sys
import uuid
import traceback
from datetime import datetime
from typing import Callable, Optional, Union
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shared.utils import settings

# Never written to the log in clear; a guest session id is as good as a login
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "x-session-id"}

# Chatty third-party loggers that only matter when something is wrong
QUIET_LOGGERS = ("pymongo", "motor", "httpx", "httpcore", "passlib")

# Keys lifted from `extra=` onto the JSON line, in output order
CONTEXT_FIELDS = (
    "request_id", "user_id", "session_id", "method", "path", "status_code",
    "duration_ms", "slow", "headers", "event", "order_number", "order_id",
    "product_id", "coupon_code",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the emitting service."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (field, getattr(record, field))
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # ObjectIds and datetimes ride along as strings
        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level: Optional[Union[int, str]] = None) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level or settings.LOG_LEVEL)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def masked_headers(request: Request) -> dict:
    return {
        k: "***" if k.lower() in SENSITIVE_HEADERS else v
        for k, v in request.headers.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an X-Request-ID and writes one access line for it.

    The caller's identity is resolved inside the route, so it is read back from
    request.state after the response is produced. Requests slower than
    SLOW_REQUEST_MS are flagged so checkout stalls show up without metrics.
    """

    def __init__(self, app: ASGIApp, service_name: str, slow_request_ms: float = settings.SLOW_REQUEST_MS):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, exc_info=sys.exc_info())
            raise

        self.log_request(request, response.status_code, started)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, exc_info=None):
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        identity = getattr(request.state, "identity", None)

        extra = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "headers": masked_headers(request),
            "user_id": identity.user_id if identity else None,
            # Only whether a guest session was used; the id itself stays masked
            "session_id": "***" if identity is not None and identity.session_id else None,
            "slow": True if duration_ms >= self.slow_request_ms else None,
        }

        if status_code >= 500:
            self.logger.error("Request failed", extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning("Request rejected", extra=extra)
        elif extra["slow"]:
            self.logger.warning("Slow request", extra=extra)
        else:
            self.logger.info("Request processed", extra=extra)
