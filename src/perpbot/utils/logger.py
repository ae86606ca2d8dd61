"""
Structured logging for the perpbot trading engine.

Every component logs snake_case events with keyword fields through structlog.
Output is either a colored console rendering (development) or one JSON object per
line (production). Secrets such as API keys,
signatures and listen keys are masked before rendering.

Example Usage:
    ```python
    from perpbot.utils.logger import (
        LogConfig, add_context, bind_bot_context, get_logger, setup_logging,
    )

    setup_logging(LogConfig(level="INFO", format="json"))
    logger = get_logger(__name__)

    bind_bot_context(bot_id=7, symbol="BTCUSDT")
    logger.info("state_transition", old="IDLE", new="EVALUATING")

    with add_context(order_id="123"):
        logger.info("order_placed")
    ```
"""

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor

# Context merged into every event: bot-wide values plus scoped add_context values
_context_vars: dict[str, Any] = {}

_app_info: dict[str, Any] = {"environment": "unknown", "version": "unknown", "max_length": 1000}

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "api_secret",
        "apisecret",
        "secret",
        "signature",
        "listen_key",
        "listenkey",
        "encryption_key",
        "password",
        "token",
        "private_key",
    }
)


@dataclass
class LogConfig:
    """Configuration for the logging system.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for production, "pretty" for development
        file_path: Optional JSON log file, in addition to the console
        include_timestamp: Whether to add ISO timestamps
        include_caller_info: Whether to add file/line/function of the call site
        console_output: Whether to write to stdout
        max_string_length: Longer string values are truncated
        environment: Environment name (dev, testnet, prod)
        app_version: Application version string
    """

    level: str = "INFO"
    format: Literal["json", "pretty"] = "pretty"
    file_path: str | None = None
    include_timestamp: bool = True
    include_caller_info: bool = True
    console_output: bool = True
    max_string_length: int = 1000
    environment: str = "dev"
    app_version: str = "1.0.0"


def add_app_info(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the application name, environment and version."""
    event_dict["app"] = "perpbot"
    event_dict["environment"] = _app_info["environment"]
    event_dict["version"] = _app_info["version"]
    return event_dict


def add_bot_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Merge bound bot context (bot id, symbol, scoped values) without overriding fields."""
    for key, value in _context_vars.items():
        event_dict.setdefault(key, value)
    return event_dict


def mask_value(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) <= 4:
            return "***"
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def filter_sensitive(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-like values anywhere in the event, including nested dicts."""

    def recursive_mask(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                key: mask_value(value) if str(key).lower() in SENSITIVE_KEYS else recursive_mask(value)
                for key, value in data.items()
            }
        if isinstance(data, (list, tuple)):
            return type(data)(recursive_mask(item) for item in data)
        return data

    return recursive_mask(event_dict)  # type: ignore[no-any-return]


def truncate_strings(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Truncate long string values, e.g. raw oracle responses, to keep lines bounded."""
    max_length = _app_info["max_length"]

    def truncate_value(value: Any) -> Any:
        if isinstance(value, str) and len(value) > max_length:
            return f"{value[:max_length]}... [truncated]"
        if isinstance(value, dict):
            return {k: truncate_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(truncate_value(item) for item in value)
        return value

    return {key: truncate_value(value) for key, value in event_dict.items()}


def _shared_processors(config: LogConfig) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        add_app_info,
        add_bot_context,
        filter_sensitive,
        truncate_strings,
    ]
    if config.include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if config.include_caller_info:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ]
            )
        )
    processors.append(structlog.processors.StackInfoRenderer())
    processors.append(structlog.processors.format_exc_info)
    return processors


def setup_logging(config: LogConfig) -> None:
    """Configure structlog and the stdlib root logger from ``config``.

    The optional file handler receives the same rendering as the console, so use
    ``format="json"`` for machine-readable log files.
    """
    _app_info["environment"] = config.environment
    _app_info["version"] = config.app_version
    _app_info["max_length"] = config.max_string_length

    level = getattr(logging, config.level.upper())
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout if config.console_output else None,
        level=level,
    )

    processors = _shared_processors(config)
    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if config.file_path:
        file_path = Path(config.file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger for ``name``, typically the calling module's ``__name__``."""
    return structlog.get_logger(name)


def bind_bot_context(**kwargs: Any) -> None:
    """Attach values (bot id, symbol) to every subsequent log entry of this process."""
    _context_vars.update(kwargs)


@contextmanager
def add_context(**kwargs: Any):
    """Add values to every log entry emitted inside the ``with`` block.

    Example:
        ```python
        with add_context(order_id="123"):
            logger.info("cancel_requested")  # includes order_id
        ```
    """
    previous_context = _context_vars.copy()
    _context_vars.update(kwargs)
    try:
        yield
    finally:
        _context_vars.clear()
        _context_vars.update(previous_context)


def set_log_level(level: str) -> None:
    """Change the root logging level at runtime."""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def clear_context() -> None:
    """Drop all bound context values."""
    _context_vars.clear()
