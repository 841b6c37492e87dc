"""Tests for the background daemon process and tick guard clauses."""

import logging
import logging.handlers
import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_tether import daemon
from git_tether.config import Config
from git_tether.reconciler import CycleResult, Outcome


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
    """A directory that looks like a repository root."""
    (tmp_path / ".git").mkdir()
    return tmp_path


@pytest.fixture(autouse=True)
def quiet_system(mocker: MagicMock) -> None:
    """Keeps the host's load average and notifications out of the tests."""
    mocker.patch("git_tether.daemon.SYSTEM.is_under_load", return_value=False)
    mocker.patch("git_tether.daemon.SYSTEM.notify")


def test_find_repo_root_walks_up(repo_path: Path) -> None:
    """Verifies that a nested path resolves to the repository root."""
    nested = repo_path / "a" / "b"
    nested.mkdir(parents=True)

    assert daemon.find_repo_root(nested) == repo_path.resolve()


def test_find_repo_root_outside_repo(tmp_path: Path) -> None:
    """Verifies that a path outside any repository yields None."""
    assert daemon.find_repo_root(tmp_path) is None


def test_run_tick_runs_cycle(repo_path: Path) -> None:
    """Verifies that an active repository gets a reconciliation cycle."""
    reconciler = MagicMock()
    reconciler.run_cycle.return_value = CycleResult(Outcome.IDLE)

    result = daemon.run_tick(reconciler, repo_path)

    assert result is not None and result.outcome is Outcome.IDLE
    reconciler.run_cycle.assert_called_once()


def test_run_tick_respects_pause(
    repo_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a paused repository is skipped without calling git."""
    (repo_path / ".git" / "tether_paused").touch()
    reconciler = MagicMock()

    assert daemon.run_tick(reconciler, repo_path) is None

    reconciler.run_cycle.assert_not_called()
    assert "Paused by user" in caplog.text


def test_run_tick_logs_load_skip(
    repo_path: Path, mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a tick skipped for system load is still logged."""
    mocker.patch("git_tether.daemon.SYSTEM.is_under_load", return_value=True)
    reconciler = MagicMock()

    assert daemon.run_tick(reconciler, repo_path) is None

    reconciler.run_cycle.assert_not_called()
    assert f"SKIPPED {repo_path.name}: System under load" in caplog.text


def test_run_tick_stops_when_repo_vanishes(tmp_path: Path) -> None:
    """Verifies that the loop is stopped once the repository is deleted."""
    reconciler = MagicMock()
    scheduler = MagicMock()

    assert daemon.run_tick(reconciler, tmp_path, scheduler) is None

    scheduler.stop.assert_called_once()
    reconciler.run_cycle.assert_not_called()


def test_build_reconciler_wires_config(repo_path: Path) -> None:
    """Verifies that config values reach the reconciler and git client."""
    conf = Config()
    conf.sync.commit_message = "notes sync"
    conf.sync.command_timeout = 7
    conf.notifications.enabled = False

    reconciler = daemon.build_reconciler(repo_path, conf)

    assert reconciler.commit_message == "notes sync"
    assert reconciler.notifier is None
    assert reconciler.name == repo_path.name
    assert reconciler.client.timeout == 7


def test_run_daemon_drives_cycles_with_synthetic_ticks(
    repo_path: Path, mocker: MagicMock
) -> None:
    """Verifies the loop runs one cycle per tick and manages the PID file."""
    mocker.patch("git_tether.daemon.signal.signal")
    mocker.patch("git_tether.daemon.atexit.register")
    mock_reconciler = MagicMock()
    mocker.patch("git_tether.daemon.build_reconciler", return_value=mock_reconciler)

    processed = daemon.run_daemon(repo_path, Config(), ticks=range(3))

    assert processed == 3
    assert mock_reconciler.run_cycle.call_count == 3
    assert daemon.pid_file(repo_path).read_text() == str(os.getpid())


def test_run_daemon_installs_stop_handlers(repo_path: Path, mocker: MagicMock) -> None:
    """Verifies that SIGTERM stops the scheduler instead of killing mid-cycle."""
    mock_signal = mocker.patch("git_tether.daemon.signal.signal")
    mocker.patch("git_tether.daemon.atexit.register")
    mocker.patch("git_tether.daemon.build_reconciler")

    daemon.run_daemon(repo_path, Config(), ticks=[])

    handled = {call.args[0] for call in mock_signal.call_args_list}
    assert daemon.signal.SIGTERM in handled
    assert daemon.signal.SIGINT in handled


def test_run_daemon_refuses_second_instance(
    repo_path: Path, mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a live daemon for the same repository blocks a new one."""
    mocker.patch("git_tether.daemon.read_pid", return_value=os.getpid() + 1)
    mock_build = mocker.patch("git_tether.daemon.build_reconciler")

    with pytest.raises(SystemExit) as excinfo:
        daemon.run_daemon(repo_path, Config(), ticks=range(3))

    assert excinfo.value.code == 1
    mock_build.assert_not_called()
    assert "already watching" in caplog.text
    assert not daemon.pid_file(repo_path).exists()


def test_other_daemon_ignores_own_pid(repo_path: Path) -> None:
    """Verifies that a process never treats its own PID file as a competitor."""
    daemon.pid_file(repo_path).write_text(str(os.getpid()))

    assert daemon.other_daemon(repo_path) is None


def test_log_file_is_per_repository(tmp_path: Path) -> None:
    """Verifies that checkouts sharing a name still log to separate files."""
    first = tmp_path / "a" / "notes"
    second = tmp_path / "b" / "notes"

    assert daemon.log_file(first) != daemon.log_file(second)
    assert daemon.log_file(first).name.startswith("notes-")
    assert daemon.log_file(first) == daemon.log_file(first)


def test_read_pid_ignores_dead_process(repo_path: Path, mocker: MagicMock) -> None:
    """Verifies that a stale PID file is not reported as a running daemon."""
    daemon.pid_file(repo_path).write_text("999999")
    mocker.patch("git_tether.daemon.os.kill", side_effect=ProcessLookupError)

    assert daemon.read_pid(repo_path) is None


def test_read_pid_live_process(repo_path: Path) -> None:
    """Verifies that the current process is detected as alive."""
    daemon.pid_file(repo_path).write_text(str(os.getpid()))

    assert daemon.read_pid(repo_path) == os.getpid()


def test_setup_logging_is_idempotent(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that repeated setup does not stack handlers."""
    log_path = tmp_path / "notes.log"

    daemon.setup_logging(interactive=False, max_log_size=1024, log_path=log_path)
    daemon.setup_logging(interactive=False, max_log_size=1024, log_path=log_path)

    try:
        assert len(daemon.logger.handlers) == 2
        rotating = [
            h
            for h in daemon.logger.handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert rotating and rotating[0].maxBytes == 1024
    finally:
        for handler in list(daemon.logger.handlers):
            daemon.logger.removeHandler(handler)
            handler.close()


def test_apply_overrides(mocker: MagicMock) -> None:
    """Verifies that command-line flags replace configured values."""
    conf = Config()

    daemon.apply_overrides(conf, interval="5m", message="manual")

    assert conf.sync.interval == 300
    assert conf.sync.commit_message == "manual"


def test_main_rejects_non_repository(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that the daemon refuses to start outside a repository."""
    mocker.patch("git_tether.daemon.find_repo_root", return_value=None)
    mocker.patch("git_tether.daemon.console")

    with pytest.raises(SystemExit):
        daemon.main(["--repo", str(tmp_path)])
