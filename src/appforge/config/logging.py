"""Logging configuration with JSON format support.

Log records go to stderr; command results are printed on stdout by the CLI.
Orchestration code attaches ``app``, ``version`` and ``stage`` through
``extra=`` so one cycle can be followed across modules.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from appforge.utils.validation import sanitize_log_message

# Record attributes set through ``extra=`` by the orchestrator, deployer and builder
CONTEXT_FIELDS = (
    "app",
    "version",
    "stage",
    "container",
    "port",
    "tier",
    "attempt",
    "duration_ms",
)

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


class SanitizingFilter(logging.Filter):
    """Redact API keys and tokens before a record is emitted.

    Engine diagnostics and generated content are logged verbatim elsewhere,
    so string arguments and cached exception text are scrubbed as well.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        if record.exc_text:
            record.exc_text = sanitize_log_message(record.exc_text)
        return True


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with cycle context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; cycle context is appended in brackets."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        # Keep tracebacks below the bracketed context
        head, sep, tail = line.partition("\n")
        suffix = " ".join(f"{key}={value}" for key, value in context.items())
        return f"{head} [{suffix}]{sep}{tail}"


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        sanitize_logs: If True, redact sensitive data (API keys, tokens) from logs
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if format.lower() == "json" else TextFormatter())
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
