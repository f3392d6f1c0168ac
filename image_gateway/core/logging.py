"""Centralized logging configuration.

Every record passes two handler filters before it is formatted:
  - RequestContextFilter stamps the current request id (set by the access
    middleware) on records that did not pass one explicitly
  - SecretRedactingFilter replaces configured provider API keys in the
    rendered message with their masked preview

Output is a console line, or one JSON object per record when LOG_JSON is set.
"""

import contextvars
import json
import logging
import sys
from collections.abc import Iterable
from datetime import datetime, timezone

from image_gateway.core.config import settings

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

# Extras copied into structured output when a call site passes them
_CONTEXT_FIELDS = ("request_id", "identity", "metadata")

_NOISY_LOGGERS = ("httpx", "httpcore", "PIL", "multipart")


def mask_secret(secret: str) -> str:
    """Preview safe to log: first 4 characters only."""
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}..."


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            request_id = request_id_var.get()
            if request_id is not None:
                record.request_id = request_id
        return True


class SecretRedactingFilter(logging.Filter):
    """Rewrite records whose rendered message contains a known secret."""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self._replacements = [(s, mask_secret(s)) for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._replacements:
            return True
        message = record.getMessage()
        redacted = message
        for secret, masked in self._replacements:
            redacted = redacted.replace(secret, masked)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_data[field_name] = value
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable line; the request id is appended when known."""

    def __init__(self):
        super().__init__(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = getattr(record, "request_id", None)
        if request_id:
            line = f"{line} [req={request_id}]"
        return line


def setup_logging(
    level: str | None = None,
    json_output: bool | None = None,
    secrets: Iterable[str] | None = None,
) -> logging.Handler:
    """Configure the root logger and return the installed handler.

    Arguments default to LOG_LEVEL, LOG_JSON and the configured provider keys.
    """
    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    use_json = settings.log_json if json_output is None else json_output
    known_secrets = settings.credential_secrets if secrets is None else list(secrets)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SecretRedactingFilter(known_secrets))
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
