"""Tests for the package-level logger setup."""

from __future__ import annotations

import logging

import pytest

import cropflow


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, logging.INFO),
        ("", logging.INFO),
        ("debug", logging.DEBUG),
        (" WARNING ", logging.WARNING),
        ("10", 10),
        ("chatty", logging.INFO),
    ],
)
def test_resolve_log_level(raw, expected):
    assert cropflow.resolve_log_level(raw) == expected


def test_package_logger_has_console_handler_with_thread_names():
    handlers = cropflow.log.handlers

    assert cropflow.log.name == "cropflow"
    assert any(isinstance(handler, logging.StreamHandler) for handler in handlers)
    assert any(handler.formatter is not None and "%(threadName)s" in handler.formatter._fmt for handler in handlers)
    assert cropflow.LOG_FILE.name == "cropflow.log"
