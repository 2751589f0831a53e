"""structlog setup for the sweep.

Every module logs through ``get_logger(__name__)`` with key/value events.
``configure_logging`` routes those events through stdlib logging, so redis-py
and asyncio records end up in the same stream with the same renderer.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Literal, cast

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import Processor

type BoundLogger = structlog.stdlib.BoundLogger
type LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]


class LoggingConfig(BaseSettings):
    """Logging settings, read from ``LOG_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOG_",
        extra="ignore",
        frozen=True,
    )

    level: LogLevel = Field(default="INFO")
    json_output: bool = Field(default=False, description="One JSON object per line instead of console output")
    service_name: str = Field(default="dlq-sweep", description="Bound as ``service`` on every event")
    callsite: bool = Field(default=True, description="Add module and line number to every event")
    file_path: str | None = Field(default=None, description="Write to a rotating file instead of stderr")
    max_bytes: int = Field(default=50_000_000, ge=1024)
    backup_count: int = Field(default=10, ge=0)
    library_log_levels: dict[str, LogLevel] = Field(default_factory=lambda: {"redis": "WARNING", "asyncio": "WARNING"})


def build_processors(config: LoggingConfig) -> list[Processor]:
    """Processor chain ending in the JSON or console renderer."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if config.callsite:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[CallsiteParameter.MODULE, CallsiteParameter.LINENO],
            )
        )

    if config.json_output:
        return [
            *processors,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    # ConsoleRenderer formats exceptions itself
    return [
        *processors,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(colors=config.file_path is None and sys.stderr.isatty()),
    ]


def build_handler(config: LoggingConfig) -> logging.Handler:
    """Rotating file handler when ``file_path`` is set, stderr otherwise.

    stdout is left to the run summary table.
    """
    handler: logging.Handler
    if config.file_path:
        log_path = Path(config.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setLevel(config.level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(config: LoggingConfig | None = None) -> None:
    config = config or LoggingConfig()

    structlog.configure(
        processors=build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers = [build_handler(config)]
    root.setLevel(config.level)
    for lib_name, lib_level in config.library_log_levels.items():
        logging.getLogger(lib_name).setLevel(lib_level)

    structlog.contextvars.bind_contextvars(service=config.service_name)


def get_logger(name: str | None = None) -> BoundLogger:
    return cast(BoundLogger, structlog.get_logger(name))
