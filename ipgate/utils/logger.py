"""Structured logging for IPGate.

structlog is configured once per process. Events carry keyword fields; the
proxy binds the request ID to the current context so every event emitted
while forwarding a request carries it.

Environment:
  LOG_LEVEL  — DEBUG | INFO | WARNING | ERROR (default INFO, DEBUG if DEBUG=true)
  JSON_LOGS  — "true" for one JSON object per line (default), else console output
  DEBUG      — "true" lowers the default level to DEBUG
"""

import logging
import os
import sys
from typing import Optional

import structlog
from structlog.types import Processor


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Args:
        log_level: Level name. Read from the environment when None.
        json_output: JSON renderer if True, console renderer if False. Read
                     from JSON_LOGS when None.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "DEBUG" if _env_flag("DEBUG", "false") else "INFO")
    if json_output is None:
        json_output = _env_flag("JSON_LOGS", "true")

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "ipgate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Bind the request ID to the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


# LOG_LEVEL, JSON_LOGS and DEBUG apply from the first import
configure_logging()
