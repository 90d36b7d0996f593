from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Run id attached to every log entry emitted while a workflow run is active
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def get_run_id() -> Optional[str]:
    """Get the id of the run executing in the current context."""
    return run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set or generate the run id for the current context."""
    rid = run_id or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def _add_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add run_id to all log entries."""
    rid = get_run_id()
    if rid:
        event_dict.setdefault("run_id", rid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and personal data from log entries."""
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email", "ssn"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_run_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the active run id."""
    return structlog.get_logger(name)


def log_run_history(history: Iterable[Any], logger: Optional[Any] = None) -> None:
    """Log the tools dispatched by a finished run, in call order."""
    log = logger or get_logger("workflow")
    entries = []
    for entry in history:
        if hasattr(entry, "summary"):
            entries.append(entry.summary())
        else:
            entries.append(entry)
    log.info("run_history", history=entries)


# Patterns that indicate sensitive information in error messages
_SENSITIVE_ERROR_PATTERNS = [
    # Path/file related
    r'(?i)/(?:home|var|etc|usr|opt|tmp|root|srv)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    # Credential patterns
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    # Stack traces
    r'(?i)traceback\s*\(most recent call last\)',
    r'(?i)file\s+"[^"]+",\s+line\s+\d+',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize an error message before it leaves the engine.

    Removes file paths, credentials and stack trace fragments, and caps the
    length so a handler's exception text cannot flood a stored run record.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
