"""Error taxonomy, client-facing error bodies and server-side logging.

Every rejection is rendered as ``{error, code, timestamp, requestId}``. In
production the client only ever sees a generic message for the error code;
the detailed message stays in the server logs, correlated by request id.
"""
from __future__ import annotations
import json
import logging
import queue
import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_sink_handler: Optional[QueueHandler] = None
_sink_listener: Optional[QueueListener] = None


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DATABASE_ERROR = "DATABASE_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    SPAM_DETECTED = "SPAM_DETECTED"
    DUPLICATE_CONTENT = "DUPLICATE_CONTENT"


GENERIC_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_ERROR: "Invalid input provided",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests. Please try again later",
    ErrorCode.DATABASE_ERROR: "A database error occurred",
    ErrorCode.AUTHENTICATION_ERROR: "Authentication failed",
    ErrorCode.FORBIDDEN: "Access denied",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.SPAM_DETECTED: "Content flagged as spam",
    ErrorCode.DUPLICATE_CONTENT: "Duplicate or similar content detected",
    ErrorCode.INTERNAL_ERROR: "An internal error occurred",
}

# Codes whose message is never shown verbatim, whatever the environment.
ALWAYS_HIDDEN = {ErrorCode.DATABASE_ERROR, ErrorCode.INTERNAL_ERROR}


class GuardError(Exception):
    """Base class for every rejection the service can return.

    Attributes:
        message: Detailed, human-readable message.
        code: The ErrorCode reported to the client.
        status: HTTP status code.
        headers: Extra response headers (e.g. ``Retry-After``).
        request_id: Correlation id, filled in by whoever raises it.
    """

    code = ErrorCode.INTERNAL_ERROR
    status = 500

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.headers = headers or {}
        if status is not None:
            self.status = status

    def client_message(self, production: bool) -> str:
        """Returns the message that may be shown to the caller."""
        if production or self.code in ALWAYS_HIDDEN:
            return GENERIC_MESSAGES[self.code]
        return self.message

    def to_body(self, production: bool) -> Dict[str, Any]:
        body = {
            "error": self.client_message(production),
            "code": self.code.value,
            "timestamp": utc_now_iso(),
        }
        if self.request_id:
            body["requestId"] = self.request_id
        return body


class ValidationError(GuardError):
    code = ErrorCode.VALIDATION_ERROR
    status = 400


class RateLimitExceeded(GuardError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    status = 429


class AccessDenied(GuardError):
    code = ErrorCode.FORBIDDEN
    status = 403


class SpamDetected(GuardError):
    code = ErrorCode.SPAM_DETECTED
    status = 400


class DuplicateContent(GuardError):
    code = ErrorCode.DUPLICATE_CONTENT
    status = 409


class DatabaseError(GuardError):
    code = ErrorCode.DATABASE_ERROR
    status = 500


class InternalError(GuardError):
    code = ErrorCode.INTERNAL_ERROR
    status = 500


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_request_id() -> str:
    """Returns a correlation id of the form ``req_<epoch-ms>_<9 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_iso(ts: float) -> str:
    """Formats an epoch timestamp (seconds) as ISO-8601 UTC."""
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class HttpLogHandler(logging.Handler):
    """Ships log records as JSON documents to an external HTTP sink."""

    def __init__(self, endpoint: str, timeout: float = 3.0, level=logging.WARNING):
        super().__init__(level)
        self.endpoint = endpoint
        self.timeout = timeout

    def emit(self, record: logging.LogRecord):
        try:
            entry = {
                "timestamp": to_iso(record.created),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            entry.update(getattr(record, "context", {}) or {})
            requests.post(
                self.endpoint,
                data=json.dumps(entry, ensure_ascii=False),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except Exception:
            self.handleError(record)


def configure_logging(production: bool, endpoint: Optional[str] = None):
    """Sets up root logging for the service.

    In production, and when ``endpoint`` is given, WARNING-and-above records
    are also posted to the external sink. Records are handed to a queue and
    posted from a listener thread, so logging never waits on the network.
    """
    global _sink_handler, _sink_listener
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=logging.INFO if not production else logging.WARNING,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    if production and endpoint and _sink_listener is None:
        records: queue.Queue = queue.Queue(-1)
        _sink_listener = QueueListener(
            records, HttpLogHandler(endpoint), respect_handler_level=True
        )
        _sink_listener.start()
        _sink_handler = QueueHandler(records)
        root.addHandler(_sink_handler)


def shutdown_logging():
    """Flushes queued records to the sink and detaches it."""
    global _sink_handler, _sink_listener
    if _sink_listener is not None:
        _sink_listener.stop()
        _sink_listener = None
    if _sink_handler is not None:
        logging.getLogger().removeHandler(_sink_handler)
        _sink_handler = None


def log_event(
    log: logging.Logger, level: int, message: str, **context: Any
):
    """Logs ``message`` with a JSON context payload.

    The context travels on the record too, so HttpLogHandler can forward it
    as structured fields.
    """
    payload = {"message": message, **context}
    log.log(
        level,
        json.dumps(payload, ensure_ascii=False, default=str),
        extra={"context": context},
    )
