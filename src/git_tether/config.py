import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    ENV_COMMIT_MESSAGE,
    ENV_INTERVAL,
    LOCAL_CONFIG_NAME,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30s') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)?s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or "s"
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


@dataclass
class SyncConfig:
    """Reconciliation loop settings.

    Attributes:
        interval (int): Seconds between cycles.
        commit_message (str | None): Overrides the generated commit message.
            A '{timestamp}' placeholder is filled with the commit time.
        command_timeout (int): Seconds before a single git command is abandoned.
        run_on_start (bool): Whether the first cycle runs immediately at startup.
        preset (str | None): An interval preset name (e.g. 'realtime').
    """

    interval: int = 60
    commit_message: str | None = None
    command_timeout: int = 120
    run_on_start: bool = True
    preset: str | None = None

    def apply_preset(self) -> None:
        """Overwrites the interval based on the selected preset."""
        if self.preset == "realtime":
            self.interval = 2
        elif self.preset == "fast":
            self.interval = 15
        elif self.preset == "balanced":
            self.interval = 60
        elif self.preset == "lazy":
            self.interval = 900  # 15 mins


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class NotificationsConfig:
    """Desktop notification settings.

    Attributes:
        enabled (bool): Whether conflicts raise a desktop notification.
    """

    enabled: bool = True


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        sync (SyncConfig): Loop and commit settings.
        limits (LimitsConfig): Resource limits.
        notifications (NotificationsConfig): Notification settings.
    """

    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    # Cache for the base global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, repo_path: Path | None = None) -> "Config":
        """Loads and merges configuration from defaults, global, local and env sources.

        Args:
            repo_path (Path | None): The repository root to search for local config.

        Returns:
            Config: The fully merged configuration object.
        """
        # 1. Load or Retrieve Global Config
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        # Copy each section so callers never mutate the cache
        cached = cls._global_cache
        instance = cls(
            sync=replace(cached.sync),
            limits=replace(cached.limits),
            notifications=replace(cached.notifications),
        )

        # 2. Load Local Config (if applicable)
        if repo_path:
            local_toml = repo_path / LOCAL_CONFIG_NAME
            pyproject = repo_path / "pyproject.toml"

            if local_toml.exists():
                instance._merge_from_file(local_toml)
            elif pyproject.exists():
                instance._merge_from_file(pyproject, section="tool.tether")

        # 3. Environment
        instance._merge_from_env()

        return instance

    def _merge_from_file(self, path: Path, section: str | None = None) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
            section (str | None): Dot-separated section path (e.g., 'tool.tether').
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if section:
                for key in section.split("."):
                    data = data.get(key, {})

            if not data:
                return

            if "sync" in data:
                self.sync = self._update_dataclass("sync", self.sync, data["sync"])
                self.sync.apply_preset()
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "notifications" in data:
                self.notifications = self._update_dataclass(
                    "notifications", self.notifications, data["notifications"]
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    def _merge_from_env(self) -> None:
        """Applies process environment overrides."""
        updates: dict[str, Any] = {}
        if interval := os.environ.get(ENV_INTERVAL):
            updates["interval"] = interval
        if message := os.environ.get(ENV_COMMIT_MESSAGE):
            updates["commit_message"] = message
        if updates:
            self.sync = self._update_dataclass("env", self.sync, updates)

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(invalid_keys)}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["interval", "command_timeout"]:
                    seconds = parse_time(v)
                    if seconds <= 0:
                        raise ValueError(f"Must be positive, got '{v}'")
                    filtered_updates[k] = seconds
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
