"""Secure logging configuration with billing credential redaction.

Provides log formatters that redact billing-provider credentials (access key
ids, secret access keys and bearer tokens) from log messages before they
reach centralized logging.

Supports both text and JSON-structured logging formats.
"""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

# Messages larger than this are truncated before redaction
_MAX_MESSAGE_CHARS = 100_000

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    }
)


class SecureFormatter(logging.Formatter):
    """Log formatter that redacts billing credentials from log messages.

    Redacts:
    - AWS-style access key ids (AKIA/ASIA + 16 uppercase alphanumerics)
    - secret_access_key / aws_secret_access_key assignments
    - Authorization bearer tokens
    """

    ACCESS_KEY_PATTERN = re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")
    SECRET_PATTERN = re.compile(
        r"((?:aws_)?secret_access_key\s*[=:]\s*[\"']?)[A-Za-z0-9/+=]{20,}",
        re.IGNORECASE,
    )
    BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/-]{8,}=*", re.IGNORECASE)

    def redact(self, text: str) -> str:
        """Replace any credential-looking substrings in text."""
        text = self.ACCESS_KEY_PATTERN.sub("AKIA***[redacted]", text)
        text = self.SECRET_PATTERN.sub(r"\1***[redacted]", text)
        return self.BEARER_PATTERN.sub(r"\1***[redacted]", text)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record and redact any credentials.

        Args:
            record: The log record to format.

        Returns:
            Formatted log message with credentials redacted.
        """
        try:
            formatted = super().format(record)
        except (ValueError, TypeError, KeyError) as e:
            safe_msg = str(getattr(record, "msg", "<no message>"))[:200]
            safe_name = getattr(record, "name", "<unknown>")
            return (
                f"[LOGGING ERROR: Failed to format log record - {type(e).__name__}: {e}] "
                f"(logger={safe_name}, msg={self.redact(safe_msg)})"
            )

        if len(formatted) > _MAX_MESSAGE_CHARS:
            formatted = formatted[:_MAX_MESSAGE_CHARS] + "... [truncated for safety]"

        try:
            return self.redact(formatted)
        except (MemoryError, RecursionError) as e:
            print(f"ERROR: Redaction failed due to {type(e).__name__}: {e}", file=sys.stderr)
            return f"[REDACTION ERROR: {type(e).__name__}] - message suppressed for security"


class SecureJSONFormatter(SecureFormatter):
    """JSON log formatter with credential redaction and structured context.

    Outputs log records as JSON with standard fields plus custom context fields
    from the 'extra' parameter.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with redacted credentials."""
        try:
            log_entry: dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key.startswith("_") or key in _RESERVED_RECORD_KEYS:
                    continue
                log_entry[key] = value

            return self.redact(json.dumps(log_entry, default=str))

        except (TypeError, ValueError) as e:
            error_entry = {
                "timestamp": datetime.now(UTC).isoformat(),
                "level": "ERROR",
                "logger": "logging",
                "message": f"[LOGGING ERROR: {type(e).__name__}]",
            }
            return json.dumps(error_entry)


def configure_secure_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
    json_format: bool = False,
) -> None:
    """Configure the root logger with a credential-redacting formatter.

    Args:
        level: Logging level (default: INFO). Level names are accepted.
        format_string: Format string for text logging. Ignored if json_format=True.
        json_format: If True, use JSON structured logging format.
    """
    if json_format:
        formatter: logging.Formatter = SecureJSONFormatter()
    else:
        if format_string is None:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        formatter = SecureFormatter(format_string)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
