"""
Shared utilities for the NeuroData Hub API.

This module contains configuration, logging and service clients used across
multiple API endpoints.
"""
from .logger import get_logger, setup_logging
from .settings import Settings, get_settings

__all__ = [
    "get_logger",
    "setup_logging",
    "Settings",
    "get_settings",
]
