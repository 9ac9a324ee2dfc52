"""XDG-compliant path helpers for Kiln data storage."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir


def get_data_dir() -> Path:
    """Get the data directory for Kiln (job database)."""
    override = os.environ.get("KILN_DATA_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_data_dir("kiln"))


def get_config_dir() -> Path:
    """Get the config directory for Kiln (config.toml)."""
    override = os.environ.get("KILN_CONFIG_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_config_dir("kiln"))


def get_database_path() -> Path:
    """Get the path to the SQLite job database."""
    override = os.environ.get("KILN_DB_PATH")
    if override:
        return Path(override)
    return get_data_dir() / "kiln.db"


def get_config_path() -> Path:
    """Get the path to the main config file."""
    override = os.environ.get("KILN_CONFIG")
    if override:
        return Path(override)
    return get_config_dir() / "config.toml"
