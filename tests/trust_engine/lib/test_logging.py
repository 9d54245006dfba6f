"""
Tests for logging setup (trust_engine/lib/logging.py).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from unittest.mock import patch

import pytest
import structlog

from trust_engine.lib.logging import REDACTED, redact_sensitive, setup_logging


@pytest.fixture()
def restore_logging() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _renderer(root: logging.Logger) -> object:
    (handler,) = root.handlers
    assert isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
    return handler.formatter.processors[-1]


class TestSetupLogging:
    def test_dev_mode_console(self, restore_logging: logging.Logger) -> None:
        with patch.dict(os.environ, {"TRUST_DEV_MODE": "1"}):
            setup_logging("debug")

        assert restore_logging.level == logging.DEBUG
        assert isinstance(_renderer(restore_logging), structlog.dev.ConsoleRenderer)

    def test_production_json(self, restore_logging: logging.Logger) -> None:
        with patch.dict(os.environ, {"TRUST_DEV_MODE": "0", "LOG_LEVEL": "warning"}):
            setup_logging()

        assert restore_logging.level == logging.WARNING
        assert isinstance(_renderer(restore_logging), structlog.processors.JSONRenderer)

    def test_noisy_loggers_quieted(self, restore_logging: logging.Logger) -> None:
        setup_logging()
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("apscheduler.executors").level == logging.WARNING


class TestRedactSensitive:
    def test_masks_key_material_and_addresses(self) -> None:
        event = {"event": "key rotated", "key_material": b"raw", "ip_address": "192.0.2.1", "user_id": "u1"}
        result = redact_sensitive(None, "info", event)
        assert result["key_material"] == REDACTED
        assert result["ip_address"] == REDACTED
        assert result["user_id"] == "u1"

    def test_leaves_none_alone(self) -> None:
        assert redact_sensitive(None, "info", {"event": "x", "user_agent": None})["user_agent"] is None
