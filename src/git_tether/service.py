import re
import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .constants import APP_LABEL, DAEMON_EXECUTABLE

console = Console()


def get_executable() -> str:
    """Locates the installed daemon executable in the system path.

    Returns:
        str: The absolute path to the 'git-tether-daemon' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which(DAEMON_EXECUTABLE)
    if not exe:
        console.print(
            f"[bold red]ERROR:[/bold red] Could not find '{DAEMON_EXECUTABLE}'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def unit_name(repo_path: Path) -> str:
    """Derives a systemd-safe unit name for a repository.

    Example: '/home/me/My Notes' -> 'com.gittether.my-notes.service'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", repo_path.name.lower()).strip("-") or "repo"
    return f"{APP_LABEL}.{slug}.service"


def get_unit_path(repo_path: Path) -> Path:
    """Resolves the service unit path for a repository on the current OS.

    Returns:
        Path: The systemd user unit path.

    Raises:
        NotImplementedError: If called on a platform without systemd support.
    """
    if sys.platform.startswith("linux"):
        return Path.home() / ".config/systemd/user" / unit_name(repo_path)

    raise NotImplementedError("Service installation is only supported on Linux.")


def install_linux(
    unit_path: Path, executable: str, repo_path: Path, interval: int | None = None
) -> None:
    """Writes and enables a systemd user service that runs the daemon loop.

    Args:
        unit_path (Path): The target path for the .service file.
        executable (str): The path to the daemon executable.
        repo_path (Path): The repository the daemon should watch.
        interval (int | None, optional): Seconds between cycles. When omitted, the
            daemon reads the interval from its configuration.
    """
    unit_path.parent.mkdir(parents=True, exist_ok=True)

    command = f'{executable} --repo "{repo_path}"'
    if interval is not None:
        command += f" --interval {interval}"

    service_content = f"""[Unit]
Description=Git Tether sync for {repo_path.name}

[Service]
ExecStart={command}
Restart=on-failure
RestartSec=30

[Install]
WantedBy=default.target
"""

    with open(unit_path, "w") as f:
        f.write(service_content)

    subprocess.run(["systemctl", "--user", "daemon-reload"], check=True)
    subprocess.run(
        ["systemctl", "--user", "enable", "--now", unit_path.name], check=True
    )
    console.print(
        f"[bold green]SUCCESS:[/bold green] Tether service active (Linux).\n"
        f"Check status: systemctl --user status {unit_path.name}"
    )


def install(repo_path: Path, interval: int | None = None) -> None:
    """Installs the background service for a repository.

    On Linux, this generates a systemd user unit. Elsewhere, it explains how to run
    the daemon manually.

    Args:
        repo_path (Path): The repository root.
        interval (int | None, optional): Pins the interval in the unit. Defaults to
            None, which leaves it to the layered configuration.
    """
    if not sys.platform.startswith("linux"):
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Automatic service installation "
            "is only available on Linux."
        )
        console.print("Run the daemon under your own supervisor:")
        console.print(f"   [green]{DAEMON_EXECUTABLE} --repo {repo_path}[/green]\n")
        return

    exe = get_executable()
    unit_path = get_unit_path(repo_path)

    if interval is None:
        console.print("Installing background service (interval from config)...")
    else:
        console.print(f"Installing background service (interval: {interval}s)...")
    install_linux(unit_path, exe, repo_path, interval)


def uninstall(repo_path: Path) -> None:
    """Disables and removes the background service for a repository."""
    if not sys.platform.startswith("linux"):
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] No managed service exists on "
            "this platform. Stop the daemon process directly.\n"
        )
        return

    unit_path = get_unit_path(repo_path)
    subprocess.run(
        ["systemctl", "--user", "disable", "--now", unit_path.name],
        stderr=subprocess.DEVNULL,
    )

    if unit_path.exists():
        unit_path.unlink()

    subprocess.run(["systemctl", "--user", "daemon-reload"])

    console.print("[bold green]SUCCESS:[/bold green] Service uninstalled.")


def is_service_enabled(repo_path: Path) -> bool:
    """Checks whether the systemd unit for this repository is enabled."""
    if not sys.platform.startswith("linux"):
        return False
    try:
        res = subprocess.run(
            ["systemctl", "--user", "is-enabled", unit_name(repo_path)],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return False
    return res.returncode == 0
