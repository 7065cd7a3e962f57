"""
Core infrastructure: configuration, logging, exceptions, time helpers.
"""

from .config import Settings, settings
from .logging import get_logger, setup_logging
from .timeutils import Clock, utc_now

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "Clock",
    "utc_now",
]
