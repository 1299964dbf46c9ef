"""Core utilities for the governor."""

from governor.app.core.config import Settings, settings
from governor.app.core.http_client import create_http_client, get_http_client, init_http_client
from governor.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "create_http_client",
    "get_http_client",
    "init_http_client",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
