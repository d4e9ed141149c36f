"""
Utility modules for the viewing workflow.
"""

from .formatting import format_datetime, format_window
from .config import Config
from .logging_setup import configure_logging

__all__ = ["format_datetime", "format_window", "Config", "configure_logging"]
