"""Tests for log health monitoring."""

import os
import time
from unittest.mock import patch

import pytest

from node_watchdog.config import RunConfig
from node_watchdog.monitor import (
    HealthMonitor,
    HealthSignal,
    find_error_keyword,
    has_error_signal,
    is_idle,
)


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "node.log"
    path.write_text("starting node\n")
    return path


def _age(path, seconds):
    """Backdate a file's mtime by ``seconds``; return the reference 'now'."""
    now = time.time()
    os.utime(path, (now - seconds, now - seconds))
    return now


class TestIsIdle:
    """Test idle detection."""

    def test_idle_past_threshold(self, log_file):
        """Log untouched for 901s with a 900s threshold is idle."""
        now = _age(log_file, 901)
        assert is_idle(log_file, 900, now=now) is True

    def test_not_idle_before_threshold(self, log_file):
        """Log untouched for 899s with a 900s threshold is not idle."""
        now = _age(log_file, 899)
        assert is_idle(log_file, 900, now=now) is False

    def test_missing_file_not_idle(self, tmp_path):
        """A log that does not exist yet is too early to judge."""
        assert is_idle(tmp_path / "absent.log", 1) is False

    def test_fresh_write_not_idle(self, log_file):
        """A just-written log is not idle."""
        assert is_idle(log_file, 5) is False


class TestErrorKeywords:
    """Test keyword detection."""

    def test_literal_match(self, log_file):
        """Keyword matches regardless of surrounding content."""
        log_file.write_text("step 41\nRuntimeError: CUDA out of memory. Tried to allocate\nstep 42\n")
        assert has_error_signal(log_file, ["CUDA out of memory"], case_insensitive=False) is True

    def test_case_insensitive_match(self, log_file):
        """Mixed case matches when case-insensitivity is on."""
        log_file.write_text("cuda OUT of Memory\n")
        assert has_error_signal(log_file, ["CUDA out of memory"], case_insensitive=True) is True

    def test_case_sensitive_no_match(self, log_file):
        """Mixed case does not match when case-insensitivity is off."""
        log_file.write_text("cuda OUT of Memory\n")
        assert has_error_signal(log_file, ["CUDA out of memory"], case_insensitive=False) is False

    def test_regex_characters_are_literal(self, log_file):
        """Keywords are plain text, not patterns."""
        log_file.write_text("requestsXexceptionsXConnectionError\n")
        assert has_error_signal(log_file, ["requests.exceptions.ConnectionError"]) is False

        log_file.write_text("requests.exceptions.ConnectionError: boom\n")
        assert has_error_signal(log_file, ["requests.exceptions.ConnectionError"]) is True

    def test_first_match_returned(self, log_file):
        """The first keyword found in the log is reported."""
        log_file.write_text("all good\nEOFError\nOSError\n")
        assert find_error_keyword(log_file, ["OSError", "EOFError"]) == "EOFError"

    def test_no_match(self, log_file):
        """Clean log has no error signal."""
        assert find_error_keyword(log_file, ["Traceback"]) is None

    def test_missing_file(self, tmp_path):
        """Missing log has no error signal."""
        assert has_error_signal(tmp_path / "absent.log", ["Traceback"]) is False

    def test_unreadable_log_is_no_signal(self, tmp_path, caplog):
        """A log that cannot be opened is reported, not raised."""
        assert find_error_keyword(tmp_path, ["Traceback"]) is None
        assert "Cannot read log" in caplog.text

    def test_log_removed_before_read(self, log_file):
        """A log deleted between checks is simply no signal."""
        log_file.unlink()
        assert find_error_keyword(log_file, ["starting"]) is None


class TestUnreadableLog:
    """Test log access failures other than a missing file."""

    def test_stat_permission_error(self, log_file, caplog):
        """A stat failure means no idle signal, with a warning."""
        with patch("node_watchdog.monitor.Path.stat", side_effect=PermissionError("denied")):
            assert is_idle(log_file, 60) is False
        assert "Cannot stat log" in caplog.text

    def test_check_survives_permission_error(self, log_file):
        """HealthMonitor.check reports healthy when the log cannot be read."""
        monitor = HealthMonitor(RunConfig(log_file=str(log_file), idle_seconds=60))
        with patch("builtins.open", side_effect=PermissionError("denied")):
            assert monitor.check() is None


class TestHealthMonitor:
    """Test HealthMonitor.check."""

    def test_healthy(self, log_file):
        """Fresh clean log is healthy."""
        monitor = HealthMonitor(RunConfig(log_file=str(log_file), idle_seconds=60))
        assert monitor.check() is None

    def test_idle_signal(self, log_file):
        """Idle log yields an idle signal."""
        now = _age(log_file, 120)
        monitor = HealthMonitor(RunConfig(log_file=str(log_file), idle_seconds=60))
        signal = monitor.check(now=now)

        assert signal.reason == HealthSignal.IDLE
        assert signal.idle_seconds == pytest.approx(120, abs=1)

    def test_keyword_signal(self, log_file):
        """Keyword in log yields an error signal."""
        log_file.write_text("P2PDaemonError: daemon died\n")
        monitor = HealthMonitor(RunConfig(log_file=str(log_file), idle_seconds=60))
        signal = monitor.check()

        assert signal.reason == HealthSignal.ERROR_KEYWORD
        assert signal.keyword == "P2PDaemonError"
        assert "P2PDaemonError" in str(signal)

    def test_idle_checked_before_keywords(self, log_file):
        """When both apply, idleness is reported."""
        log_file.write_text("OSError\n")
        now = _age(log_file, 120)
        monitor = HealthMonitor(RunConfig(log_file=str(log_file), idle_seconds=60))
        assert monitor.check(now=now).reason == HealthSignal.IDLE

    def test_static_queries_available_on_class(self, log_file):
        """Queries can be called through the class as well."""
        assert HealthMonitor.is_idle(log_file, 60) is False
        assert HealthMonitor.has_error_signal(log_file, ["starting"]) is True
