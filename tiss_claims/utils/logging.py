"""
Structured logging configuration for the TISS claims engine.

Uses structlog for structured, contextual logging.
"""

import logging
import sys
import time
from typing import Any

import structlog

from tiss_claims.utils.dates import utc_now


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    include_timestamp: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output logs as JSON
        include_timestamp: If True, include timestamp in logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name (optional)

    Returns:
        Bound structlog logger
    """
    return structlog.get_logger(name)


class StageLog:
    """
    Collects per-stage processing log entries for a return file.

    Entries are plain dicts so they can be appended to the Return's
    ``processing_logs`` column as-is. Every entry is mirrored to structlog.

    Usage:
        stages = StageLog(return_id=return_id)
        with stages.stage("parse"):
            result = parse_return(data)
        stages.entries  # [{"stage": "parse", "duration_ms": 12, ...}]
    """

    def __init__(self, **context: Any):
        self.entries: list[dict[str, Any]] = []
        self._logger = structlog.get_logger().bind(**context)

    def add(self, stage: str, message: str, level: str = "INFO", **extra: Any) -> None:
        """Append an entry without timing."""
        entry = {
            "stage": stage,
            "level": level,
            "message": message,
            "at": utc_now().isoformat(),
            **extra,
        }
        self.entries.append(entry)
        log_fn = getattr(self._logger, level.lower(), self._logger.info)
        log_fn("return_stage", stage=stage, message=message, **extra)

    def stage(self, name: str, message: str | None = None) -> "_StageTimer":
        """Context manager timing a stage; records failures with level ERROR."""
        return _StageTimer(self, name, message or name)


class _StageTimer:
    def __init__(self, log: StageLog, name: str, message: str):
        self._log = log
        self._name = name
        self._message = message
        self._start = 0.0
        self.extra: dict[str, Any] = {}

    def __enter__(self) -> "_StageTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        duration_ms = int((time.perf_counter() - self._start) * 1000)
        if exc is None:
            self._log.add(self._name, self._message, duration_ms=duration_ms, **self.extra)
        else:
            self._log.add(
                self._name,
                f"{self._message} failed: {exc}",
                level="ERROR",
                duration_ms=duration_ms,
                **self.extra,
            )
        return False
