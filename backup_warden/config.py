"""Warden configuration and its JSON loader."""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from backup_warden.errors import ConfigInvalid

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG = PROJECT_ROOT / "config" / "config.json"

# Timer tick: the warden evaluates the watch folder once an hour
DEFAULT_POLL_INTERVAL_SECONDS = 3600

# Quiet period after a change hint before the tree is evaluated
DEFAULT_CHANGE_SETTLE_SECONDS = 30


def resolve_path(path_str: str) -> Path:
    return Path(os.path.expanduser(os.path.expandvars(str(path_str)))).resolve()


def _is_within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


@dataclass(frozen=True)
class WardenConfig:
    """Validated, immutable configuration for one warden."""

    watch_folder: Path
    backup_locations: tuple[Path, ...]
    retention_days: int
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    watch_events: bool = True
    use_polling_observer: bool = False
    change_settle_seconds: float = DEFAULT_CHANGE_SETTLE_SECONDS
    parallel_writes: bool = False

    @classmethod
    def from_dict(cls, data: dict, check_paths: bool = True) -> "WardenConfig":
        """Build a config from a decoded JSON object.

        Raises ConfigInvalid on any missing or malformed field. With
        ``check_paths`` the watch folder must be a readable directory and
        every backup location a writable directory.
        """
        if not isinstance(data, dict):
            raise ConfigInvalid("Config must be a JSON object")

        for key in ("watch_folder", "backup_locations", "retention_days"):
            if key not in data:
                raise ConfigInvalid(f"Missing required config key: {key}")

        if not isinstance(data["watch_folder"], str) or not data["watch_folder"]:
            raise ConfigInvalid("watch_folder must be a non-empty string")
        watch_folder = resolve_path(data["watch_folder"])

        raw_locations = data["backup_locations"]
        if isinstance(raw_locations, str) or not isinstance(raw_locations, list):
            raise ConfigInvalid("backup_locations must be a list of paths")
        if not raw_locations:
            raise ConfigInvalid("At least one backup location is required")

        locations: list[Path] = []
        for loc in raw_locations:
            if not isinstance(loc, str) or not loc:
                raise ConfigInvalid(f"Invalid backup location: {loc!r}")
            path = resolve_path(loc)
            if _is_within(path, watch_folder):
                raise ConfigInvalid(
                    f"Backup location {path} is inside the watch folder {watch_folder}"
                )
            if path in locations:
                raise ConfigInvalid(f"Duplicate backup location: {path}")
            locations.append(path)

        retention = data["retention_days"]
        if isinstance(retention, bool) or not isinstance(retention, int) or retention < 1:
            raise ConfigInvalid(
                f"retention_days must be a positive integer, got {retention!r}"
            )

        poll_interval = cls._number(data, "poll_interval_seconds",
                                    DEFAULT_POLL_INTERVAL_SECONDS, minimum=1)
        settle = cls._number(data, "change_settle_seconds",
                             DEFAULT_CHANGE_SETTLE_SECONDS, minimum=0)

        config = cls(
            watch_folder=watch_folder,
            backup_locations=tuple(locations),
            retention_days=retention,
            poll_interval_seconds=poll_interval,
            watch_events=cls._flag(data, "watch_events", True),
            use_polling_observer=cls._flag(data, "use_polling_observer", False),
            change_settle_seconds=settle,
            parallel_writes=cls._flag(data, "parallel_writes", False),
        )
        if check_paths:
            config.check_paths()
        return config

    @staticmethod
    def _number(data: dict, key: str, default: float, minimum: float) -> float:
        value = data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
            raise ConfigInvalid(f"{key} must be a number >= {minimum}, got {value!r}")
        return value

    @staticmethod
    def _flag(data: dict, key: str, default: bool) -> bool:
        value = data.get(key, default)
        if not isinstance(value, bool):
            raise ConfigInvalid(f"{key} must be true or false, got {value!r}")
        return value

    def check_paths(self):
        """Verify the configured paths are usable right now."""
        if not self.watch_folder.is_dir():
            raise ConfigInvalid(f"Watch folder is not a directory: {self.watch_folder}")
        if not os.access(self.watch_folder, os.R_OK | os.X_OK):
            raise ConfigInvalid(f"Watch folder is not readable: {self.watch_folder}")
        for loc in self.backup_locations:
            if not loc.is_dir():
                raise ConfigInvalid(f"Backup location is not a directory: {loc}")
            if not os.access(loc, os.W_OK | os.X_OK):
                raise ConfigInvalid(f"Backup location is not writable: {loc}")


def load_config(config_path: str | os.PathLike | None = None,
                check_paths: bool = True) -> WardenConfig:
    """Read and validate a JSON config file."""
    path = Path(config_path or DEFAULT_CONFIG)
    if not path.exists():
        raise ConfigInvalid(f"Config file not found: {path}")
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigInvalid(f"Config file {path} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise ConfigInvalid(f"Could not read config file {path}: {exc}") from exc

    config = WardenConfig.from_dict(data, check_paths=check_paths)
    logger.debug("Loaded config from %s", path)
    return config
