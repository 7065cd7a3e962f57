"""
Structured logging setup using structlog.
Provides consistent logging across all modules.
"""

import sys
import logging
from typing import Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings, settings as default_settings


def setup_logging(log_file: Optional[str] = None, config: Optional[Settings] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_file: Optional path to log file
        config: Settings to read log level/format from (defaults to global settings)
    """
    config = config or default_settings

    # Clear any existing handlers
    logging.getLogger().handlers.clear()

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _app_context(config),
        structlog.stdlib.PositionalArgumentsFormatter(),
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, config.log_level)
    handlers = []

    # Console handler with Rich for development
    if config.is_development and config.log_format != "json":
        console = Console(file=sys.stderr)
        rich_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=True,
            rich_tracebacks=True,
        )
        rich_handler.setLevel(level)
        handlers.append(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(_plain_formatter(config))
        handlers.append(stream_handler)

    if log_file or config.log_file:
        file_path = Path(log_file or config.log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(_plain_formatter(config))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _app_context(config: Settings):
    """Stamp every event with the service name and environment."""
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("app", config.app_name)
        event_dict.setdefault("environment", config.environment)
        return event_dict
    return processor


def _plain_formatter(config: Settings) -> logging.Formatter:
    if config.log_format == "json":
        return logging.Formatter('%(message)s')
    return logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)
