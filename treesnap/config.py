"""Persistent JSON config helpers.

Stores snapshot defaults: whether git ignore rules apply, which ignore files
are read at the root, extra ignore patterns, and the symlink cycle guard.
All access is defensive: malformed or missing config falls back safely.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_config_dir

from .path_filter import DEFAULT_IGNORE_FILES

APP_NAME = "treesnap"
CONFIG_FILENAME = "config.json"
DEFAULT_CONFIG_PATH = Path(user_config_dir(APP_NAME, appauthor=False)) / CONFIG_FILENAME
CONFIG_PATH = DEFAULT_CONFIG_PATH


@dataclass(frozen=True)
class SnapshotSettings:
    """Effective snapshot defaults after validation."""

    use_gitignore: bool = True
    ignore_files: tuple[str, ...] = DEFAULT_IGNORE_FILES
    extra_ignore_patterns: tuple[str, ...] = ()
    guard_symlink_cycles: bool = True


def load_config() -> dict[str, object]:
    """Load the persisted JSON config object.

    Returns an empty dict when the file is missing, unreadable, malformed, or
    does not decode to a top-level JSON object.
    """
    try:
        data = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(data: dict[str, object]) -> None:
    """Persist config data as pretty-printed JSON.

    Filesystem errors are ignored so an unwritable config never breaks a run.
    """
    try:
        CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        CONFIG_PATH.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    except OSError:
        pass


def _load_bool(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key)
    return value if isinstance(value, bool) else default


def _load_str_tuple(data: dict[str, object], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Read a list of non-empty strings; anything else yields ``default``."""
    value = data.get(key)
    if not isinstance(value, list):
        return default
    return tuple(item for item in value if isinstance(item, str) and item.strip())


def load_snapshot_settings() -> SnapshotSettings:
    """Return validated snapshot defaults from the persisted config."""
    data = load_config()
    defaults = SnapshotSettings()
    return SnapshotSettings(
        use_gitignore=_load_bool(data, "use_gitignore", defaults.use_gitignore),
        ignore_files=_load_str_tuple(data, "ignore_files", defaults.ignore_files),
        extra_ignore_patterns=_load_str_tuple(data, "extra_ignore_patterns", defaults.extra_ignore_patterns),
        guard_symlink_cycles=_load_bool(data, "guard_symlink_cycles", defaults.guard_symlink_cycles),
    )


def save_snapshot_settings(settings: SnapshotSettings) -> None:
    """Persist snapshot defaults, keeping unrelated keys intact."""
    config = load_config()
    config["use_gitignore"] = bool(settings.use_gitignore)
    config["ignore_files"] = list(settings.ignore_files)
    config["extra_ignore_patterns"] = list(settings.extra_ignore_patterns)
    config["guard_symlink_cycles"] = bool(settings.guard_symlink_cycles)
    save_config(config)
