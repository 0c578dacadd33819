"""
Cross-platform utilities for Save Keeper.

Centralises OS detection so the rest of the package asks one place
where configuration and logs belong instead of checking ``sys.platform``
itself.

Supported platforms:
  - Windows 10/11
  - macOS 12+ (Monterey and newer)
  - Linux
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

_APP_DIR_NAME = "SaveKeeper"

# ---- directories -------------------------------------------------------


def get_config_dir(create: bool = True) -> Path:
    """
    Return the application config directory, created unless *create* is False.

    - Windows : ``%APPDATA%\\SaveKeeper``
    - macOS   : ``~/Library/Application Support/SaveKeeper``
    - Linux   : ``$XDG_CONFIG_HOME/SaveKeeper`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / _APP_DIR_NAME
    if create:
        config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "save_keeper.log"


def get_default_archive_dir() -> Path:
    """Return the default archive directory (not created here)."""
    return get_config_dir(create=False) / "backups"
