"""Tests for the command-line interface."""

import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from node_watchdog import cli
from node_watchdog.lock import SingleInstanceGuard


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("SCRIPT", "TMP_LOG", "MAX_IDLE", "CASE_INSENSITIVE", "BACKOFF_START",
                "BACKOFF_MAX", "KEYWORDS_FILE", "WATCHDOG_LOCK_FILE"):
        monkeypatch.delenv(var, raising=False)
    saved_level = logging.getLogger("node-watchdog").level
    yield
    logging.getLogger("node-watchdog").setLevel(saved_level)
    # setup_logging binds a handler to the captured stdout
    for handler in list(logging.getLogger("node-watchdog").handlers):
        logging.getLogger("node-watchdog").removeHandler(handler)


class TestExitCodes:
    """Test exit statuses of the console entry point."""

    def test_help_exits_zero(self, capsys):
        """-h prints usage and exits 0."""
        assert cli.run(["-h"]) == 0
        out = capsys.readouterr().out
        assert "--backoff-start" in out
        assert "-k" in out

    def test_unknown_flag_exits_one(self, capsys):
        """An unknown flag is an error with status 1."""
        assert cli.run(["--bogus"]) == 1
        assert "bogus" in capsys.readouterr().err

    def test_bad_case_flag_exits_one(self):
        """-c only accepts 0 or 1."""
        assert cli.run(["-c", "2"]) == 1

    def test_invalid_config_exits_one(self, tmp_path, capsys):
        """backoff_max below backoff_start is rejected before starting."""
        with patch("node_watchdog.cli.SupervisorLoop") as loop_cls:
            code = cli.run(
                ["--backoff-start", "30", "--backoff-max", "5",
                 "--lock-file", str(tmp_path / "w.lock")]
            )

        assert code == 1
        assert "backoff_max" in capsys.readouterr().err
        loop_cls.assert_not_called()

    def test_bad_env_value_exits_one(self, monkeypatch, capsys):
        """Unparseable environment values are reported."""
        monkeypatch.setenv("MAX_IDLE", "forever")
        assert cli.run([]) == 1
        assert "Invalid environment configuration" in capsys.readouterr().err


class TestSingleInstance:
    """Test the single-instance guard at startup."""

    def test_second_instance_exits_nonzero_without_spawning(self, tmp_path):
        """While another watchdog holds the lock, startup fails with 1 and spawns nothing."""
        lock_path = tmp_path / "watchdog.lock"
        holder = SingleInstanceGuard(lock_path).acquire()
        try:
            with patch("node_watchdog.watchdog.ProcessRunner.spawn") as spawn, \
                    patch("node_watchdog.cli.SupervisorLoop.run") as run:
                code = cli.run(["--lock-file", str(lock_path), "-s", str(tmp_path / "run.sh")])

            assert code == 1
            spawn.assert_not_called()
            run.assert_not_called()
        finally:
            holder.release()

    def test_runs_loop_with_resolved_config(self, tmp_path):
        """Flags reach the supervisor's configuration and the lock is released after."""
        lock_path = tmp_path / "watchdog.lock"
        with patch("node_watchdog.cli.SupervisorLoop") as loop_cls:
            loop_cls.return_value.run.return_value = 0
            code = cli.run(
                ["-s", str(tmp_path / "run.sh"), "-l", str(tmp_path / "n.log"),
                 "-i", "120", "-c", "0", "--backoff-start", "2", "--backoff-max", "8",
                 "--lock-file", str(lock_path)]
            )

        assert code == 0
        config = loop_cls.call_args[0][0]
        assert config.idle_seconds == 120
        assert config.case_insensitive is False
        assert config.backoff_start == 2
        assert config.backoff_max == 8
        assert config.log_file == str(tmp_path / "n.log")

        # lock was released on the way out
        with SingleInstanceGuard(lock_path) as guard:
            assert guard.held

    def test_keywords_file_flag(self, tmp_path):
        """-k replaces the built-in keyword list."""
        keywords = tmp_path / "keywords.txt"
        keywords.write_text("Segmentation fault\n\nKilled\n")
        with patch("node_watchdog.cli.SupervisorLoop") as loop_cls:
            loop_cls.return_value.run.return_value = 0
            cli.run(["-k", str(keywords), "--lock-file", str(tmp_path / "w.lock")])

        config = loop_cls.call_args[0][0]
        assert config.keywords == ("Segmentation fault", "Killed")


class TestHelpText:
    """Test help output through click's runner."""

    def test_help_lists_env_vars(self):
        """Help text names the environment variables."""
        result = CliRunner().invoke(cli.main, ["--help"])
        assert result.exit_code == 0
        assert "MAX_IDLE" in result.output
        assert "BACKOFF_MAX" in result.output


class TestStartupEdgeCases:
    """Test startup with unusual but valid or recoverable inputs."""

    def test_blank_keywords_file_starts_loop(self, tmp_path):
        """A keywords file with only blank lines runs with idle detection alone."""
        keywords = tmp_path / "keywords.txt"
        keywords.write_text("\n  \n\n")
        with patch("node_watchdog.cli.SupervisorLoop") as loop_cls:
            loop_cls.return_value.run.return_value = 0
            code = cli.run(["-k", str(keywords), "--lock-file", str(tmp_path / "w.lock")])

        assert code == 0
        loop_cls.return_value.run.assert_called_once()
        assert loop_cls.call_args[0][0].keywords == ()

    def test_unopenable_lock_file_exits_one(self, tmp_path, caplog):
        """A lock path that cannot be created is a clean exit 1."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        with patch("node_watchdog.cli.SupervisorLoop") as loop_cls:
            code = cli.run(["--lock-file", str(blocker / "w.lock")])

        assert code == 1
        loop_cls.assert_not_called()
        assert "Cannot open lock file" in caplog.text
