"""
test_logging_config.py — Tests for fieldsync/logging_config.py

Covers sink selection from settings, stdlib interception and per-run
context binding.

Called by: pytest
Depends on: fieldsync/logging_config.py, fieldsync/config.py
"""

import logging
from unittest.mock import patch

import pytest
from loguru import logger

from fieldsync.config import settings
from fieldsync.logging_config import is_production, setup_logging


@pytest.fixture(autouse=True)
def _clean_loguru():
    logger.remove()
    yield
    logger.remove()


def _capture(level="DEBUG"):
    messages = []
    logger.add(lambda m: messages.append(m.record), level=level, format="{message}")
    return messages


@pytest.mark.parametrize("url, expected", [
    ("http://localhost:8000", False),
    ("http://127.0.0.1:8000", False),
    ("", False),
    ("https://sync.example.com", True),
])
def test_production_detection(url, expected):
    assert is_production(url) is expected


def test_level_read_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "log_level", "warning")
    with patch("loguru.logger.add") as mock_add:
        setup_logging()
    assert mock_add.call_args.kwargs["level"] == "WARNING"


def test_explicit_level_overrides_settings(monkeypatch):
    monkeypatch.setattr(settings, "log_level", "INFO")
    with patch("loguru.logger.add") as mock_add:
        setup_logging(level="error")
    assert mock_add.call_args.kwargs["level"] == "ERROR"


def test_production_app_url_switches_to_json(monkeypatch):
    monkeypatch.setattr(settings, "app_url", "https://sync.example.com")
    with patch("loguru.logger.add") as mock_add:
        setup_logging()
    assert mock_add.call_args.kwargs.get("serialize") is True


def test_local_app_url_is_human_readable(monkeypatch):
    monkeypatch.setattr(settings, "app_url", "http://localhost:8000")
    with patch("loguru.logger.add") as mock_add:
        setup_logging()
    assert mock_add.call_args.kwargs.get("colorize") is True
    assert "serialize" not in mock_add.call_args.kwargs


def test_stdlib_records_reach_loguru():
    setup_logging(app_url="http://localhost:8000")
    records = _capture()

    logging.getLogger("alembic.runtime.migration").warning("Running upgrade -> 001_initial")

    assert any("001_initial" in r["message"] for r in records)


def test_quiet_loggers_lowered_to_warning():
    setup_logging(app_url="http://localhost:8000")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_account_binding_is_scoped():
    records = _capture()

    with logger.contextualize(account="residential"):
        logger.info("page synced")
    logger.info("run finished")

    assert records[0]["extra"].get("account") == "residential"
    assert "account" not in records[1]["extra"]
