"""
Structured logging configuration.

- Development / testing: human-readable colored format
- Production: JSON format (log aggregator compatible)
- Log level: LOG_LEVEL config key or env variable

Every record passes through SyncContextFilter, which stamps request_id,
owner and source_account_id onto it. Inside a request they come from the
request itself; background poll workers bind them with bind_source_account().
The same filter masks Canvas access tokens, which can appear in a URL query
string (access_token=...) or an Authorization header echoed into an error.
"""

import json
import logging
import os
import re
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Attributes copied from a LogRecord into the JSON document when set.
_CONTEXT_FIELDS = ("request_id", "owner", "source_account_id")
_REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr")

_TOKEN_PATTERNS = (
    re.compile(r"(access_token=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[A-Za-z0-9~._\-]+", re.IGNORECASE),
)
_MASK = "***"

_bound = threading.local()


def redact(text: str) -> str:
    """Mask Canvas tokens in a log message."""
    for pattern in _TOKEN_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + _MASK, text)
    return text


@contextmanager
def bind_source_account(source_account_id: str, owner: str | None = None):
    """Tag every record logged by this thread with the given account.

    Usage:
        with bind_source_account(account_id):
            run_cycle(account_id)
    """
    previous = getattr(_bound, "scope", None)
    _bound.scope = (source_account_id, owner)
    try:
        yield
    finally:
        _bound.scope = previous


def _current_scope() -> tuple[str | None, str | None, str | None]:
    """Return (request_id, owner, source_account_id) for the current thread."""
    bound = getattr(_bound, "scope", None)
    if bound is not None:
        source_account_id, owner = bound
        return None, owner, source_account_id
    if not has_request_context():
        return None, None, None
    owner = request.headers.get("X-User") or request.args.get("owner")
    view_args = request.view_args or {}
    return getattr(g, "request_id", None), owner, view_args.get("source_account_id")


class SyncContextFilter(logging.Filter):
    """Attach sync context to records and mask tokens. Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id, owner, source_account_id = _current_scope()
        for key, value in (
            ("request_id", request_id),
            ("owner", owner),
            ("source_account_id", source_account_id),
        ):
            if getattr(record, key, None) is None and value is not None:
                setattr(record, key, value)

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # Bad format args; the handler reports these itself.
            return True
        masked = redact(message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = redact(self.formatException(record.exc_info))
        for key in _CONTEXT_FIELDS + _REQUEST_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        account = getattr(record, "source_account_id", None)
        # Short id is enough to tell concurrent poll workers apart.
        scope = f" <{account[:8]}>" if account else ""
        base = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} "
            f"{record.name}{scope}: {record.getMessage()}{dur_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + redact(self.formatException(record.exc_info))
        return base


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Reads LOG_LEVEL from config, then env (default: DEBUG in dev, INFO in prod).
    Development  → ReadableFormatter on stderr
    Production   → JSONFormatter on stderr
    Both         → SyncContextFilter on the handler
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    # Repeated create_app() calls in tests must not stack handlers.
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(SyncContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    # urllib3 logs full request URLs, tokens included, at DEBUG.
    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
