"""
Configuration module for the perpbot trading engine.

Exports the process Settings, get_settings and the per-bot BotConfig model.
"""

from .settings import BotConfig, Settings, get_settings

__all__ = ["BotConfig", "Settings", "get_settings"]
