from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

_TRACE_ENV = "CLAUDELINK__TRACE_PIPELINE"

_pipeline_trace: bool | None = None


def _env_flag(name: str) -> bool:
    value = os.environ.get(name, "")
    return value.strip().lower() in {"1", "true", "yes", "on"}


def setup_logging(
    *,
    debug: bool = False,
    json_logs: bool | None = None,
    trace_pipeline: bool | None = None,
) -> None:
    """Configure structlog for library and application use.

    ``json_logs`` defaults to JSON output when stderr is not a terminal.
    """
    global _pipeline_trace
    if trace_pipeline is not None:
        _pipeline_trace = trace_pipeline

    level = logging.DEBUG if debug else logging.INFO
    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def pipeline_trace_enabled() -> bool:
    if _pipeline_trace is not None:
        return _pipeline_trace
    return _env_flag(_TRACE_ENV)


def log_pipeline(logger: Any, event: str, **fields: Any) -> None:
    """Log per-line subprocess traffic; promoted to info when tracing."""
    if pipeline_trace_enabled():
        logger.info(event, **fields)
    else:
        logger.debug(event, **fields)
