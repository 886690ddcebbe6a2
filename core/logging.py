"""
Structured JSON logging for CertKit.

Every log line is a single JSON object so that generation, batch and
verification events can be shipped to CloudWatch, ELK or DataDog and
correlated by ``unique_id``, ``batch_id`` or ``request_id``.

Example usage:
    >>> from core.logging import get_logger, setup_logging
    >>> setup_logging()
    >>> logger = get_logger(__name__)
    >>> logger.info("Certificate generated", extra={"unique_id": "abc123"})
"""

import json
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
])

# Never written to a log line, even when passed through ``extra``
_REDACTED_FIELDS = frozenset(['secret', 'signature', 'digital_signature', 'authorization'])


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON with a stable set of top-level fields.

    Example:
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(JSONFormatter())
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if key in _REDACTED_FIELDS:
                log_entry[key] = "***"
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware that logs each request with status and timing.

    A short request id is generated per request, stored on
    ``request.state.request_id`` and echoed in the ``X-Request-ID`` header.
    """

    def __init__(self, app, logger_name: str = "certkit.requests"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        client_ip = self._get_client_ip(request)
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            self.logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status": 500,
                    "duration_ms": duration_ms,
                    "client_ip": client_ip,
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        duration_ms = int((time.time() - start_time) * 1000)
        self.logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": client_ip,
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

        if request.client:
            return request.client.host

        return "unknown"


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    logger_name: Optional[str] = None,
    stream: Optional[IO[str]] = None
) -> None:
    """
    Configure logging with JSON (default) or plain text formatting.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "json" or "text"
        logger_name: Logger to configure (None for root)
        stream: Output stream (stdout by default)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if format_type.lower() == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(numeric_level)

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()

    # Avoid duplicate handlers when called more than once
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(numeric_level)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (typically ``__name__``)."""
    return logging.getLogger(name)
