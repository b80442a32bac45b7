"""
Tests for the connection circuit breaker.
"""

import logging
import sys
from unittest.mock import MagicMock

import pytest

from ghostwatch.services.connection_watchdog import ConnectionWatchdog


def record(message, level=logging.ERROR, name="telethon.network"):
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


@pytest.fixture
def terminate():
    return MagicMock()


@pytest.fixture
def watchdog(terminate, clock):
    return ConnectionWatchdog(max_errors=3, window_seconds=300, terminate=terminate, clock=clock)


def test_matches_markers(watchdog):
    assert watchdog.matches(record("Request timeout while sending"))
    assert watchdog.matches(record("Cannot send requests while disconnected: not connected"))
    assert not watchdog.matches(record("Something else broke"))


def test_matches_exception_text(watchdog):
    try:
        raise ConnectionError("Not connected")
    except ConnectionError:
        rec = logging.LogRecord("x", logging.ERROR, __file__, 1, "failure", None, sys.exc_info())
    assert watchdog.matches(rec)


def test_trips_after_burst(watchdog, terminate):
    for _ in range(3):
        watchdog.emit(record("TIMEOUT"))

    terminate.assert_called_once()
    assert watchdog.tripped is True


def test_errors_outside_window_do_not_count(watchdog, terminate, clock):
    watchdog.emit(record("timeout"))
    watchdog.emit(record("timeout"))
    clock.advance(301)
    watchdog.emit(record("timeout"))

    terminate.assert_not_called()


def test_trips_only_once(watchdog, terminate):
    for _ in range(6):
        watchdog.emit(record("timeout"))

    terminate.assert_called_once()


def test_installed_handler_ignores_warnings(watchdog, terminate):
    logger = logging.getLogger("test.watchdog")
    watchdog.install(logger)
    try:
        for _ in range(5):
            logger.warning("timeout")
        for _ in range(3):
            logger.error("timeout")
    finally:
        watchdog.uninstall(logger)

    terminate.assert_called_once()
    assert watchdog not in logger.handlers
