"""Unit tests for structlog configuration."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from dlqsweep.logger import LoggingConfig, build_handler, build_processors, configure_logging, get_logger


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestLoggingConfig:
    """Tests for LoggingConfig defaults and env parsing."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        config = LoggingConfig()
        assert config.level == "INFO"
        assert config.json_output is False
        assert config.service_name == "dlq-sweep"
        assert config.library_log_levels == {"redis": "WARNING", "asyncio": "WARNING"}

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_JSON_OUTPUT", "true")
        config = LoggingConfig()
        assert config.level == "DEBUG"
        assert config.json_output is True


class TestBuilders:
    """Tests for renderer and handler selection."""

    def test_json_renders_last(self) -> None:
        processors = build_processors(LoggingConfig(json_output=True))
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renders_last(self) -> None:
        processors = build_processors(LoggingConfig(json_output=False))
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_callsite_can_be_disabled(self) -> None:
        processors = build_processors(LoggingConfig(callsite=False))
        assert not any(isinstance(p, structlog.processors.CallsiteParameterAdder) for p in processors)

    def test_stderr_by_default(self) -> None:
        handler = build_handler(LoggingConfig(level="DEBUG"))
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr
        assert handler.level == logging.DEBUG


class TestConfigureLogging:
    """Tests for configure_logging side effects."""

    def test_sets_levels_and_service_context(self) -> None:
        configure_logging(LoggingConfig(level="WARNING", library_log_levels={"redis": "ERROR"}))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert logging.getLogger("redis").level == logging.ERROR
        assert structlog.contextvars.get_contextvars()["service"] == "dlq-sweep"

    def test_file_output_writes_json(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "sweep.log"
        configure_logging(LoggingConfig(file_path=str(log_file), json_output=True))

        get_logger("dlqsweep.test").info("Sweep finished", status="succeeded")
        for handler in logging.getLogger().handlers:
            handler.flush()

        contents = log_file.read_text(encoding="utf-8")
        assert '"event": "Sweep finished"' in contents
        assert '"status": "succeeded"' in contents
