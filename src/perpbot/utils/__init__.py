"""
Utility modules for the perpbot trading engine.

Structured logging and credential decryption helpers.
"""

from .logger import (
    LogConfig,
    add_context,
    bind_bot_context,
    clear_context,
    get_logger,
    set_log_level,
    setup_logging,
)

__all__ = [
    "LogConfig",
    "setup_logging",
    "get_logger",
    "add_context",
    "bind_bot_context",
    "set_log_level",
    "clear_context",
]
