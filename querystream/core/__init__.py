"""
Core Application Components

Configuration and logging.
"""

from querystream.core.config import Settings, get_settings
from querystream.core.logging import configure_logging, request_id_var

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "request_id_var",
]
