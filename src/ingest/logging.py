"""Structured logging for the ingestion pipeline, built on structlog.

Console output for development, JSON for production. Everything goes to
stderr so operator scripts keep stdout for their JSON summaries.

Portal credentials must never reach a log line: principals are masked with
mask_principal(), and a processor blanks any credential-like key that slips
into an event anyway.
"""

import logging
import sys

import structlog

# Event keys whose values are replaced before rendering
SENSITIVE_KEYS: frozenset[str] = frozenset({"password", "secret", "portal_pass", "rnd", "cookie", "cookies"})

# Chatty transport loggers kept at WARNING unless the run is noisier than that
_QUIET_LOGGERS = ("httpx", "httpcore")


def redact_sensitive(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: blank values of credential-like keys."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_output: If True, render JSON lines. If False, console format.
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    processors.append(structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers = [logging.StreamHandler(sys.stderr)]
    root.setLevel(numeric_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger bound with the module name (pass __name__)."""
    return structlog.get_logger(name)


def mask_principal(principal: str) -> str:
    """Shorten a principal for log output ("2012345" -> "20123***")."""
    if not principal:
        return ""
    return principal[:5] + "***"
