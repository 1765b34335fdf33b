"""Structured logging for Arbiter.

structlog is configured once at startup. Development mode renders a
readable console stream; production mode (``ARBITER_LOG_MODE=prod``)
renders JSON. An optional daily-rotated JSON file log is written under
``~/.arbiter/logs/``.

Standard log keys:
- user_id: Caller the request is billed to
- decision_id: RoutingDecision identifier
- provider_id: Registry provider of the current tier
- tier: Position of the current tier in the chain
- job: Background learning job kind

Event naming convention (dot.notation, past tense):
- "cascade.tier.escalated", "budget.alert.fired", "gepa.phase.completed"

Usage:
    from arbiter.observability import bind_context, get_logger

    log = get_logger(__name__)
    bind_context(user_id="u-1", decision_id="d-42")
    log.info("cascade.tier.accepted", provider_id="gpt-4o-mini", quality=0.91)
"""

from __future__ import annotations

from enum import Enum
import logging
from logging.handlers import TimedRotatingFileHandler
import os
from pathlib import Path
import sys
from typing import Any

from pydantic import BaseModel, Field
import structlog

from arbiter.core.security import is_sensitive_field, is_sensitive_value, mask_api_key


class LogMode(str, Enum):
    """Logging output mode."""

    DEV = "dev"
    PROD = "prod"


class LoggingConfig(BaseModel):
    """Runtime logging settings.

    Attributes:
        mode: dev for console rendering, prod for JSON.
        log_level: Minimum level to emit.
        log_dir: Directory for rotated log files.
        log_file_name: Base name of the file log.
        max_log_days: Rotated files kept.
        enable_file_logging: Whether to also write the JSON file log.
    """

    mode: LogMode = Field(default=LogMode.DEV)
    log_level: str = Field(default="INFO")
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".arbiter" / "logs")
    log_file_name: str = "arbiter.log"
    max_log_days: int = Field(default=7, ge=1, le=365)
    enable_file_logging: bool = Field(default=False)

    model_config = {"frozen": True}

    @classmethod
    def from_settings(
        cls,
        level: str,
        log_path: Path,
        *,
        file_logging: bool = False,
        max_log_days: int = 7,
    ) -> LoggingConfig:
        """Build runtime settings from the logging section of config.yaml.

        The output mode still comes from ARBITER_LOG_MODE.
        """
        return cls(
            mode=_get_mode_from_env(),
            log_level=level.upper(),
            log_dir=log_path.parent,
            log_file_name=log_path.name,
            max_log_days=max_log_days,
            enable_file_logging=file_logging,
        )


_configured: bool = False
_current_config: LoggingConfig | None = None
_console_logging_enabled: bool = True

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_PASSTHROUGH_KEYS = frozenset({"event", "level", "timestamp", "filename", "lineno"})


def _get_mode_from_env() -> LogMode:
    if os.environ.get("ARBITER_LOG_MODE", "dev").lower() == "prod":
        return LogMode.PROD
    return LogMode.DEV


def _get_log_level(level_str: str) -> int:
    return _LEVELS.get(level_str.upper(), logging.INFO)


def _setup_file_handler(config: LoggingConfig) -> TimedRotatingFileHandler | None:
    if not config.enable_file_logging:
        return None

    config.log_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(config.log_dir / config.log_file_name),
        when="midnight",
        interval=1,
        backupCount=config.max_log_days,
        encoding="utf-8",
        utc=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(_get_log_level(config.log_level))
    return handler


def _mask_value(key: str, value: Any) -> Any:
    if is_sensitive_field(key):
        return "<REDACTED>"
    if isinstance(value, str) and is_sensitive_value(value):
        return mask_api_key(value)
    if isinstance(value, dict):
        return {k: _mask_value(str(k), v) for k, v in value.items()}
    return value


def _mask_sensitive_data(
    _logger: Any,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that redacts API keys and other secrets."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS:
            continue
        event_dict[key] = _mask_value(key, value)
    return event_dict


def _get_shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        _mask_sensitive_data,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        structlog.processors.format_exc_info,
    ]


def _get_processors(mode: LogMode) -> list[Any]:
    processors = _get_shared_processors()
    if mode == LogMode.DEV:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())
    return processors


def set_console_logging(enabled: bool) -> None:
    """Silence or restore console output (the CLI silences it under rich output)."""
    global _console_logging_enabled
    _console_logging_enabled = enabled


class _TeeLogger:
    """Writes rendered lines to stderr and, when configured, a rotating file."""

    def __init__(self, file_handler: TimedRotatingFileHandler | None = None) -> None:
        self._file_handler = file_handler

    def _log(self, message: str, level: int) -> None:
        if _console_logging_enabled:
            print(message, file=sys.stderr)
        if self._file_handler:
            record = logging.LogRecord(
                name="arbiter",
                level=level,
                pathname="",
                lineno=0,
                msg=message,
                args=(),
                exc_info=None,
            )
            self._file_handler.emit(record)

    def msg(self, message: str) -> None:
        self._log(message, logging.INFO)

    def debug(self, message: str) -> None:
        self._log(message, logging.DEBUG)

    def info(self, message: str) -> None:
        self._log(message, logging.INFO)

    def warning(self, message: str) -> None:
        self._log(message, logging.WARNING)

    def error(self, message: str) -> None:
        self._log(message, logging.ERROR)

    def critical(self, message: str) -> None:
        self._log(message, logging.CRITICAL)

    def exception(self, message: str) -> None:
        self._log(message, logging.ERROR)

    warn = warning
    fatal = critical


class _TeeLoggerFactory:
    def __init__(self, file_handler: TimedRotatingFileHandler | None = None) -> None:
        self._file_handler = file_handler

    def __call__(self, *_args: Any) -> _TeeLogger:
        return _TeeLogger(self._file_handler)


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog for the process.

    Args:
        config: Logging settings. Defaults use the ARBITER_LOG_MODE variable.
    """
    global _configured, _current_config

    if config is None:
        config = LoggingConfig(mode=_get_mode_from_env())
    _current_config = config

    log_level = _get_log_level(config.log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    file_handler = _setup_file_handler(config)
    if file_handler:
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=_get_processors(config.mode),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=_TeeLoggerFactory(file_handler),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a bound logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind request-scoped keys (user_id, decision_id) to every later log line.

    Never bind credentials.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop all bound keys. Call at the end of a request."""
    structlog.contextvars.clear_contextvars()


def get_current_config() -> LoggingConfig | None:
    return _current_config


def is_configured() -> bool:
    return _configured


def reset_logging() -> None:
    """Reset module state. Used by tests."""
    global _configured, _current_config
    _configured = False
    _current_config = None
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
