"""Configuration package."""
from .settings import Settings, settings
from .logging_setup import setup_logging

__all__ = [
    "Settings",
    "settings",
    "setup_logging",
]
