"""Core infrastructure: configuration, naming policy, logging, history engine."""

from historize.core.config import (
    DatabaseSettings,
    HistorizeSettings,
    LoggingSettings,
    NamingSettings,
    load_settings,
)
from historize.core.logging import configure_logging, get_logger
from historize.core.naming import NamingPolicy, PrefixNamingPolicy

__all__ = [
    "DatabaseSettings",
    "HistorizeSettings",
    "LoggingSettings",
    "NamingPolicy",
    "NamingSettings",
    "PrefixNamingPolicy",
    "configure_logging",
    "get_logger",
    "load_settings",
]
