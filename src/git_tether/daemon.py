import argparse
import atexit
import hashlib
import logging
import os
import signal
import sys
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from rich.console import Console

from .config import Config
from .constants import APP_NAME, LOG_SUFFIX, PAUSE_MARKER, PID_MARKER, STATE_DIR
from .git_wrapper import GitRepo
from .reconciler import CycleResult, Reconciler
from .scheduler import Scheduler
from .system import get_system

SYSTEM = get_system()

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

console = Console()


def find_repo_root(start: Path) -> Path | None:
    """Walks up from `start` to the nearest directory containing `.git`.

    Args:
        start (Path): The directory to begin searching from.

    Returns:
        Path | None: The repository root, or None if `start` is not inside one.
    """
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def pid_file(repo_path: Path) -> Path:
    """Returns the PID file location for the daemon watching `repo_path`."""
    return repo_path / ".git" / PID_MARKER


def log_file(repo_path: Path) -> Path:
    """Returns the rotating log file for the daemon watching `repo_path`.

    The name carries a hash of the resolved path so that two checkouts sharing a
    directory name never write to the same file.
    """
    digest = hashlib.sha1(str(repo_path.resolve()).encode()).hexdigest()[:8]
    return STATE_DIR / f"{repo_path.name}-{digest}{LOG_SUFFIX}"


def read_pid(repo_path: Path) -> int | None:
    """Returns the PID of a live daemon for this repository, if one is running."""
    path = pid_file(repo_path)
    if not path.exists():
        return None
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def other_daemon(repo_path: Path) -> int | None:
    """Returns the PID of a live daemon for this repository other than this process."""
    pid = read_pid(repo_path)
    if pid is not None and pid != os.getpid():
        return pid
    return None


def _should_skip(repo_path: Path) -> str | None:
    """Determines if this tick should be skipped before touching the repository.

    Args:
        repo_path (Path): The repository path.

    Returns:
        str | None: The reason for skipping, or None if the cycle should run.
    """
    if not (repo_path / ".git").exists():
        return "Path missing"

    if (repo_path / ".git" / PAUSE_MARKER).exists():
        return "Paused by user"

    if SYSTEM.is_under_load():
        return "System under load"

    return None


def build_reconciler(repo_path: Path, config: Config) -> Reconciler:
    """Wires a Reconciler to the repository at `repo_path`.

    Args:
        repo_path (Path): The repository root.
        config (Config): The merged configuration for this repository.

    Returns:
        Reconciler: A reconciler driving a `GitRepo` client.
    """
    repo = GitRepo(repo_path, timeout=config.sync.command_timeout)
    notifier = SYSTEM.notify if config.notifications.enabled else None
    return Reconciler(
        repo,
        commit_message=config.sync.commit_message,
        notifier=notifier,
        name=repo_path.name,
    )


def run_tick(
    reconciler: Reconciler, repo_path: Path, scheduler: Scheduler | None = None
) -> CycleResult | None:
    """Handles one scheduler tick: guard clauses, then a reconciliation cycle.

    Args:
        reconciler (Reconciler): The reconciler for this repository.
        repo_path (Path): The repository root.
        scheduler (Scheduler | None): Stopped if the repository has disappeared.

    Returns:
        CycleResult | None: The cycle result, or None if the tick was skipped.
    """
    if reason := _should_skip(repo_path):
        if reason == "Path missing":
            logger.error(f"STOPPED {repo_path.name}: Repository no longer exists.")
            if scheduler:
                scheduler.stop()
        else:
            logger.info(f"SKIPPED {repo_path.name}: {reason}")
        return None

    return reconciler.run_cycle()


def setup_logging(
    interactive: bool,
    max_log_size: int = 5 * 1024 * 1024,
    log_path: Path | None = None,
) -> None:
    """Configures the logging subsystem.

    Calling this more than once replaces the handlers installed previously.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
        max_log_size (int): Bytes before the log file is rotated.
        log_path (Path | None, optional): The rotating log file. Only used in
            daemon mode.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive and log_path is not None:
        # In daemon mode, rotate logs to file.
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def _write_pid_file(repo_path: Path) -> None:
    path = pid_file(repo_path)
    try:
        path.write_text(str(os.getpid()))
        # Ensure cleanup on exit.
        atexit.register(lambda: path.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def run_daemon(
    repo_path: Path, config: Config, ticks: Iterable[object] | None = None
) -> int:
    """Runs the polling loop for one repository until stopped.

    Args:
        repo_path (Path): The repository root.
        config (Config): The merged configuration.
        ticks (Iterable | None, optional): Synthetic ticks replacing the wall clock.

    Returns:
        int: The number of ticks processed.

    Raises:
        SystemExit: If another daemon is already watching the repository.
    """
    if existing := other_daemon(repo_path):
        logger.error(
            f"ERROR {repo_path.name}: Another daemon (PID {existing}) "
            "is already watching this repository."
        )
        sys.exit(1)

    scheduler = Scheduler(config.sync.interval, run_on_start=config.sync.run_on_start)
    reconciler = build_reconciler(repo_path, config)

    def stop_handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"SHUTDOWN {repo_path.name}: Received signal {signum}.")
        scheduler.stop()

    signal.signal(signal.SIGTERM, stop_handler)
    signal.signal(signal.SIGINT, stop_handler)

    _write_pid_file(repo_path)

    logger.info(
        f"WATCHING {repo_path.name}: Syncing every {config.sync.interval}s "
        f"({repo_path})."
    )
    return scheduler.run(lambda: run_tick(reconciler, repo_path, scheduler), ticks)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the `git-tether-daemon` executable."""
    parser = argparse.ArgumentParser(
        prog="git-tether-daemon",
        description="Keep a git working copy in sync with its upstream.",
    )
    parser.add_argument(
        "--repo", type=Path, default=Path.cwd(), help="Repository path (default: cwd)"
    )
    parser.add_argument("--interval", help="Seconds between cycles (e.g. 30, '5m')")
    parser.add_argument("--message", help="Commit message override")
    args = parser.parse_args(argv)

    repo_path = find_repo_root(args.repo)
    if repo_path is None:
        console.print(f"[bold red]ERROR:[/bold red] Not a git repository: {args.repo}")
        sys.exit(1)

    config = Config.load(repo_path)
    apply_overrides(config, interval=args.interval, message=args.message)

    setup_logging(
        interactive=False,
        max_log_size=config.limits.max_log_size,
        log_path=log_file(repo_path),
    )
    run_daemon(repo_path, config)


def apply_overrides(
    config: Config, interval: str | None = None, message: str | None = None
) -> None:
    """Applies command-line flags on top of the loaded configuration."""
    updates = {}
    if interval is not None:
        updates["interval"] = interval
    if message is not None:
        updates["commit_message"] = message
    if updates:
        config.sync = Config._update_dataclass("cli", config.sync, updates)


if __name__ == "__main__":
    main()
