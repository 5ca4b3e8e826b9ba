"""Onebox common utilities for Python components."""

from .config import OneboxConfig, SyncSettings, get_config
from .logging import AccountLoggerAdapter, configure_logging, get_account_logger, get_logger

__all__ = [
    "get_config",
    "OneboxConfig",
    "SyncSettings",
    "get_logger",
    "get_account_logger",
    "AccountLoggerAdapter",
    "configure_logging",
]
