"""Core configuration and utilities."""

from clinex.core.config import Settings, settings
from clinex.core.logging_config import configure_logging

__all__ = [
    # Config
    "Settings",
    "settings",
    # Logging
    "configure_logging",
]
