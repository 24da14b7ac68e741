"""Central logging helpers"""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog
import structlog.stdlib

from devprobe.config import settings

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _build_file_handler(component: str, log_dir: Optional[Path] = None) -> RotatingFileHandler:
    log_dir = log_dir or settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / f"{component}.log", maxBytes=2 * 1024 * 1024, backupCount=3
    )
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def setup_logging(
    component: str = "devprobe",
    level: int = logging.INFO,
    json_logs: bool = True,
    log_to_file: bool = True,
) -> None:
    """
    Configure structlog + stdlib logging for a component.

    Args:
        component: Name used for the rotating log file (``<log_dir>/<component>.log``)
        level: stdlib logging level
        json_logs: Render events as JSON lines; otherwise use the console renderer
        log_to_file: Attach the rotating file handler in addition to stderr
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_to_file:
        handlers.append(_build_file_handler(component))

    logging.basicConfig(level=level, handlers=handlers, format=_DEFAULT_FORMAT, force=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(component=component)

    structlog.get_logger().debug("logging_initialized", level=logging.getLevelName(level))
