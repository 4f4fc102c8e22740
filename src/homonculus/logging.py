"""
structlog setup for Homonculus.

Application code logs through ``get_logger``; third-party libraries that use
the standard ``logging`` module (paramiko) are routed through the same
renderers so every line shares one format.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from homonculus.errors import PartialBatchFailure

# Library loggers capped below the application level
QUIET_LOGGERS: Dict[str, int] = {"paramiko": logging.WARNING}


def _pre_chain() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _with_renderer(handler: logging.Handler, renderer) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_pre_chain())
    )
    return handler


def configure_logging(level: str = "INFO", json_output: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Route structlog and stdlib logging to stderr, and optionally to a file.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: render stderr lines as JSON instead of key=value
        log_file: extra destination, always JSON
    """
    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if json_output:
        stderr_renderer = structlog.processors.JSONRenderer()
    else:
        stderr_renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    handlers = [_with_renderer(logging.StreamHandler(sys.stderr), stderr_renderer)]
    if log_file:
        handlers.append(_with_renderer(logging.FileHandler(log_file), structlog.processors.JSONRenderer()))

    logging.basicConfig(format="%(message)s", level=level.upper(), handlers=handlers, force=True)
    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(floor)


def get_logger(name: str = "homonculus") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@contextmanager
def log_operation(logger: structlog.stdlib.BoundLogger, operation: str, **kwargs):
    """
    Emit ``<operation>.started`` and then ``.completed`` or ``.failed``.

    The yielded logger carries ``operation`` and ``kwargs``. A batch that
    ends in ``PartialBatchFailure`` also logs the names of the failed VMs.

    Usage:
        with log_operation(log, "create_cluster", count=3) as oplog:
            ...
    """
    oplog = logger.bind(operation=operation, **kwargs)
    started = time.perf_counter()
    oplog.info(f"{operation}.started")

    try:
        yield oplog
    except Exception as e:
        extra = {"failed": e.failed} if isinstance(e, PartialBatchFailure) else {}
        oplog.error(
            f"{operation}.failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=_elapsed_ms(started),
            **extra,
        )
        raise
    oplog.info(f"{operation}.completed", duration_ms=_elapsed_ms(started))
