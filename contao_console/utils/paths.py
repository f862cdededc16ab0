"""Data directory resolution using platformdirs.

The console keeps its single config document under a per-user data dir:
  macOS: ~/Library/Application Support/contao-console/
  Linux: ~/.local/share/contao-console/
  Windows: %LOCALAPPDATA%/contao-console/

CONTAO_CONSOLE_DATA_DIR overrides the location (useful for tests and
for running several independent consoles side by side).
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "contao-console"
CONFIG_FILENAME = "config.json"
BACKUP_FILENAME = "config.backup.json"


def get_data_dir() -> Path:
    """Return the directory holding the persisted config document."""
    override = os.environ.get("CONTAO_CONSOLE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_config_path(data_dir: str | Path | None = None) -> Path:
    """Return the config document path inside data_dir (default data dir if None)."""
    base = Path(data_dir).expanduser() if data_dir else get_data_dir()
    return base / CONFIG_FILENAME


def get_backup_path(config_path: str | Path) -> Path:
    """Return the backup file written next to a config document."""
    return Path(config_path).with_name(BACKUP_FILENAME)
