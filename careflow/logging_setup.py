"""
Logging configuration for Careflow entry points.

Record contents (clinical notes, medication names, free-text queries) must not
land in log output verbatim, so every configured logger runs a processor that
masks obvious identifiers and truncates free-text fields.
"""

from __future__ import annotations

import logging
import re

import structlog

_SENSITIVE_KEYS = frozenset({"content", "text", "query", "thought", "user_message"})
_MAX_DISPLAY_LEN = 80

# Order matters: SSN before phone so the dashed form isn't half-matched.
_IDENTIFIER_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
]

_logging_configured = False


def redact_text(text: str) -> str:
    for pattern, replacement in _IDENTIFIER_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks and truncates free-text fields.

    Identifiers are replaced before truncation so that a full pattern is never
    written out.
    """
    for key in _SENSITIVE_KEYS:
        if key in event_dict:
            val = event_dict[key]
            if isinstance(val, str):
                val = redact_text(val)
                if len(val) > _MAX_DISPLAY_LEN:
                    val = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
                event_dict[key] = val
    return event_dict


def configure_logging(level: int = logging.WARNING, colors: bool = True) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
