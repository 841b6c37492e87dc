import argparse
import datetime
import logging
import os
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon, service
from .config import Config
from .constants import (
    APP_NAME,
    CONFIG_FILE,
    ENV_COMMIT_MESSAGE,
    ENV_INTERVAL,
    PAUSE_MARKER,
)
from .git_wrapper import GitError, GitRepo
from .reconciler import CycleResult, Outcome

logger = logging.getLogger(APP_NAME)
console = Console()


def _resolve_repo(path: Path) -> Path:
    """Finds the repository root for `path`, exiting if there is none."""
    repo_path = daemon.find_repo_root(path)
    if repo_path is None:
        console.print(f"[bold red]ERROR:[/bold red] Not a git repository: {path}")
        sys.exit(1)
    return repo_path


def _analyze_logs(log_path: Path, seconds: int = 86400) -> list[str]:
    """
    Scans a repository's daemon log for error messages that occurred within a recent time window.

    Args:
        log_path (Path): The repository's rotating log file.
        seconds (int, optional): The number of seconds to look back. Defaults to 86400 (24h).

    Returns:
        list[str]: A list of error or critical log lines found within the time window.
    """
    if not log_path.exists():
        return []

    errors = []
    threshold = datetime.datetime.now() - datetime.timedelta(seconds=seconds)

    try:
        # Read the last 50KB of the log file
        # to capture recent context without parsing the whole file.
        file_size = log_path.stat().st_size
        read_size = min(file_size, 50 * 1024)

        with open(log_path) as f:
            if file_size > read_size:
                f.seek(file_size - read_size)
            lines = f.readlines()

        for line in lines:
            if "ERROR" not in line and "CRITICAL" not in line:
                continue
            # Lines without a parsable [YYYY-MM-DD HH:MM:SS] prefix are kept.
            if line.startswith("["):
                try:
                    line_dt = datetime.datetime.strptime(line[1:20], "%Y-%m-%d %H:%M:%S")
                    if line_dt < threshold:
                        continue
                except ValueError:
                    pass
            errors.append(line.strip())
    except OSError as e:
        return [f"Error reading log file: {e}"]

    return errors


def run_now(repo_path: Path, message: str | None = None) -> CycleResult:
    """Runs a single reconciliation cycle in the foreground.

    Args:
        repo_path (Path): The repository root.
        message (str | None, optional): Commit message override.

    Returns:
        CycleResult: The outcome of the cycle.

    Raises:
        SystemExit: If a daemon is already syncing the repository, or the cycle
            failed.
    """
    if pid := daemon.other_daemon(repo_path):
        console.print(
            f"[bold red]ERROR:[/bold red] A daemon (PID {pid}) is already syncing "
            f"{repo_path.name}. Stop it first or wait for its next cycle."
        )
        sys.exit(1)

    config = Config.load(repo_path)
    daemon.apply_overrides(config, message=message)
    daemon.setup_logging(interactive=True)

    reconciler = daemon.build_reconciler(repo_path, config)
    with console.status(f"[bold blue]Syncing {repo_path.name}...[/bold blue]"):
        result = reconciler.run_cycle()

    if result.outcome.failed:
        console.print(
            f"[bold red]ERROR:[/bold red] Sync {result.outcome.value.replace('_', ' ')}. "
            "See the log output above."
        )
        sys.exit(1)
    elif result.outcome is Outcome.UNCONFIGURED:
        console.print(
            "[bold yellow]WARNING:[/bold yellow] No upstream configured. Run "
            "'git branch --set-upstream-to=<remote>/<branch>' first."
        )
    elif result.outcome is Outcome.BLOCKED:
        console.print(
            "[bold yellow]WARNING:[/bold yellow] A git operation is in progress. "
            "Finish or abort it, then retry."
        )
    else:
        actions = [
            label
            for label, done in (("pulled", result.pulled), ("pushed", result.pushed))
            if done
        ]
        summary = " and ".join(actions).capitalize() if actions else "Already in sync"
        console.print(f"[bold green]SUCCESS:[/bold green] {summary}.")
    return result


def show_status(repo_path: Path) -> None:
    """Displays the state of the daemon and the repository."""
    pid = daemon.read_pid(repo_path)
    if pid:
        status_text, status_style = f"Active (PID {pid})", "bold green"
    elif service.is_service_enabled(repo_path):
        status_text, status_style = "Enabled (Not Running)", "yellow"
    else:
        status_text, status_style = "Stopped", "bold red"

    system_content = Text()
    system_content.append("Daemon: ", style="bold")
    system_content.append(status_text, style=status_style)
    console.print(Panel(system_content, title="Daemon Status", expand=False))

    repo = GitRepo(repo_path)
    repo_content = Text()

    try:
        branch = repo.current_branch() or "(detached HEAD)"
        upstream = repo.upstream()
        pending = len(repo.status_porcelain())
        operation = repo.in_progress_operation()
    except GitError as e:
        console.print(f"[bold red]ERROR:[/bold red] Unable to read git status: {e}")
        sys.exit(1)

    repo_content.append(f"Branch:      {branch}\n")
    if upstream:
        try:
            ahead, behind = repo.tracking_counts(upstream)
            tracking = f"{upstream} (ahead {ahead}, behind {behind})"
        except GitError as e:
            logger.debug(f"Failed to count commits against {upstream}: {e}")
            tracking = str(upstream)
        repo_content.append(f"Upstream:    {tracking}\n")
    else:
        repo_content.append("Upstream:    none (sync disabled)\n", style="bold yellow")

    try:
        last_commit = repo.get_last_commit_time()
    except GitError:
        last_commit = "Never"
    repo_content.append(f"Last Commit: {last_commit}\n", style="dim")
    repo_content.append(f"Pending:     {pending} files changed\n")

    if (repo_path / ".git" / PAUSE_MARKER).exists():
        repo_content.append("Mode:        PAUSED", style="bold yellow")
    else:
        repo_content.append("Mode:        Active", style="green")

    if operation:
        repo_content.append("\n\n⚠ WARNING: ", style="bold yellow")
        repo_content.append(
            f"A {operation} is in progress. Sync is blocked until it is resolved.",
            style="yellow",
        )

    console.print(Panel(repo_content, title="Repository Status", expand=False))

    errors = _analyze_logs(daemon.log_file(repo_path))
    if errors:
        console.print(
            Panel(
                "\n".join(errors[-5:]),
                title=f"Recent Errors ({len(errors)} in 24h)",
                border_style="red",
                expand=False,
            )
        )


def tail_log(repo_path: Path) -> None:
    """Follows the repository's daemon log file in real-time."""
    log_path = daemon.log_file(repo_path)
    if not log_path.exists():
        console.print(f"[red]No log file found yet at {log_path}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{log_path}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(log_path)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def set_pause_state(repo_path: Path, paused: bool) -> None:
    """Toggles reconciliation for a repository.

    Args:
        repo_path (Path): The repository root.
        paused (bool): True to pause syncing, False to resume it.
    """
    pause_file = repo_path / ".git" / PAUSE_MARKER
    if paused:
        pause_file.touch()
        console.print(
            "Tether paused. Syncing suspended for this repo.", style="bold yellow"
        )
    else:
        pause_file.unlink(missing_ok=True)
        console.print("Tether resumed. Syncing active.", style="bold green")


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# Git Tether Configuration\n\n"
                "[sync]\n"
                "# Options: realtime, fast, balanced, lazy\n"
                '# preset = "balanced"\n'
                '# commit_message = "Automated commit at {timestamp}"\n'
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"

    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")

    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="Git Tether Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row(
        "sync",
        "interval",
        "int | str",
        '"60s"',
        f"Time between sync cycles (e.g., '30s', '5m'). Env: {ENV_INTERVAL}.",
    )
    table.add_row(
        "",
        "preset",
        "str",
        "None",
        "Interval preset: 'realtime' (2s), 'fast' (15s), 'balanced' (60s), 'lazy' (15m).",
    )
    table.add_row(
        "",
        "commit_message",
        "str",
        "None",
        "Overrides 'Automated commit at {timestamp}'. "
        f"Env: {ENV_COMMIT_MESSAGE}.",
    )
    table.add_row(
        "",
        "command_timeout",
        "int | str",
        '"2m"',
        "Abandon a single git command after this long.",
    )
    table.add_row(
        "", "run_on_start", "bool", "true", "Run the first cycle immediately."
    )
    table.add_row(
        "notifications",
        "enabled",
        "bool",
        "true",
        "Desktop notification when manual resolution is required.",
    )
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )

    console.print(table)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Tether CLI."""
    parser = argparse.ArgumentParser(
        prog="git-tether",
        description="Keep a git working copy in sync with its upstream branch.",
    )
    parser.add_argument(
        "--repo",
        type=Path,
        default=Path("."),
        help="Path inside the repository (default: current directory)",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the sync loop in the foreground")
    run_parser.add_argument("--interval", help="Seconds between cycles (e.g. 30, '5m')")
    run_parser.add_argument("--message", help="Commit message override")

    now_parser = subparsers.add_parser("now", help="Run one sync cycle immediately")
    now_parser.add_argument("--message", help="Commit message override")

    subparsers.add_parser("status", help="Show daemon and repository status")
    subparsers.add_parser("pause", help="Suspend syncing for this repository")
    subparsers.add_parser("resume", help="Resume syncing for this repository")
    subparsers.add_parser("log", help="Tail the daemon log file")

    config_parser = subparsers.add_parser(
        "config", help="Open global config file or view options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    install_parser = subparsers.add_parser(
        "install-service", help="Install a background service for this repository"
    )
    install_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Pin the sync interval in seconds (default: taken from config)",
    )
    subparsers.add_parser(
        "uninstall-service", help="Remove the background service for this repository"
    )

    args = parser.parse_args(argv)

    # Commands that do not need a repository.
    if args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config()
        return

    repo_path = _resolve_repo(args.repo)

    if args.command == "log":
        tail_log(repo_path)
        return
    elif args.command == "now":
        run_now(repo_path, args.message)
        return
    elif args.command == "status":
        show_status(repo_path)
        return
    elif args.command == "pause":
        set_pause_state(repo_path, True)
        return
    elif args.command == "resume":
        set_pause_state(repo_path, False)
        return
    elif args.command == "install-service":
        service.install(repo_path, interval=args.interval)
        return
    elif args.command == "uninstall-service":
        with console.status("Uninstalling service...", spinner="dots"):
            service.uninstall(repo_path)
        return

    # Default Action: run the loop in the foreground.
    config = Config.load(repo_path)
    daemon.apply_overrides(
        config,
        interval=getattr(args, "interval", None),
        message=getattr(args, "message", None),
    )
    daemon.setup_logging(interactive=True)
    daemon.run_daemon(repo_path, config)


if __name__ == "__main__":
    main()
