# Copyright (c) Syntropy Systems
"""Configuration management for ixcheck."""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from ixcheck.resources import engine_process_limit

PASSWORD_ENV_VAR = "IXCHECK_DB_PASSWORD"

_INT_KEYS = (
    "kill_grace_period",
    "mx_warn_count",
    "mx_abort_count",
    "min_channel",
    "max_channel",
    "max_engine_processes",
)
_FLOAT_KEYS = (
    "status_interval",
    "admission_poll_interval",
    "admission_stale_after",
    "engine_memory_gb",
    "km_per_degree",
)
_STR_KEYS = (
    "engine_command",
    "working_dir",
    "output_root",
    "database_id",
    "db_host",
    "db_name",
    "db_user",
    "rules_file",
    "log_file_name",
    "default_cell_size",
    "default_cell_size_lptv",
    "default_profile_ppk",
    "default_profile_ppk_lptv",
)
_BOOL_KEYS = ("check_dts_distance", "debug")


@dataclass
class IxCheckConfig:
    """Configuration for ixcheck."""

    # Engine executable, may include leading arguments
    engine_command: str = "tvstudy-engine"

    # Engine working directory and run output root (relative to the project)
    working_dir: str = "work"
    output_root: str = "out"

    # Identity of the study database as seen by the engine
    database_id: str = "local"
    db_host: str = "localhost"
    db_name: str | None = None
    db_user: str = "ixcheck"

    # Engine concurrency; None derives a limit from CPU count and memory
    max_engine_processes: int | None = None
    engine_memory_gb: float = 2.0

    # Minimum seconds between externally visible status updates
    status_interval: float = 2.95

    # Admission gate polling and stale-waiter expiry (seconds)
    admission_poll_interval: float = 0.5
    admission_stale_after: float = 2.0

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: int = 10

    # MX record counts that trigger a warning and abort a build
    mx_warn_count: int = 15
    mx_abort_count: int = 18

    km_per_degree: float = 111.15
    check_dts_distance: bool = False
    min_channel: int = 2
    max_channel: int = 51

    # Interference rule table, None uses the built-in table
    rules_file: str | None = None

    log_file_name: str = "log.txt"

    default_cell_size: str = "2"
    default_cell_size_lptv: str = "1"
    default_profile_ppk: str = "1"
    default_profile_ppk_lptv: str = "1"

    debug: bool = False

    def engine_argv_prefix(self) -> list[str]:
        """Engine command split into argv tokens."""
        return shlex.split(self.engine_command)

    def engine_process_count(self) -> int:
        """Configured engine process ceiling, or one derived from this host."""
        if self.max_engine_processes is not None:
            return self.max_engine_processes
        return engine_process_limit(self.engine_memory_gb)


def find_ixcheck_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .ixcheck directory by walking up from start_path.

    Returns None if no .ixcheck directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        ixcheck_dir = current / ".ixcheck"
        if ixcheck_dir.is_dir():
            return ixcheck_dir
        current = current.parent

    ixcheck_dir = current / ".ixcheck"
    if ixcheck_dir.is_dir():
        return ixcheck_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global ixcheck config directory (~/.ixcheck)."""
    return Path.home() / ".ixcheck"


def load_config(ixcheck_dir: Path | None = None) -> IxCheckConfig:
    """Load configuration from .ixcheck/config.yaml or defaults.

    Looks for config in:
    1. Provided ixcheck_dir
    2. Nearest .ixcheck directory walking up
    3. ~/.ixcheck/config.yaml
    4. Defaults
    """
    config = IxCheckConfig()

    config_path = None

    if ixcheck_dir is not None:
        config_path = ixcheck_dir / "config.yaml"
    else:
        found_dir = find_ixcheck_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        for key in _INT_KEYS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, key, int(value))
        for key in _FLOAT_KEYS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(config, key, float(value))
        for key in _STR_KEYS:
            value = data.get(key)
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                setattr(config, key, str(value))
        for key in _BOOL_KEYS:
            value = data.get(key)
            if isinstance(value, bool):
                setattr(config, key, value)

    return config


def require_ixcheck_dir() -> Path:
    """Get ixcheck directory or raise an error if not found."""
    ixcheck_dir = find_ixcheck_dir()
    if ixcheck_dir is None:
        msg = "No .ixcheck directory found. Run 'ixcheck init' first."
        raise RuntimeError(msg)
    return ixcheck_dir


def get_db_path(ixcheck_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if ixcheck_dir is None:
        ixcheck_dir = require_ixcheck_dir()
    return ixcheck_dir / "ixcheck.db"


def resolve_path(ixcheck_dir: Path, value: str) -> Path:
    """Resolve a configured path relative to the .ixcheck directory."""
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = ixcheck_dir / path
    return path


def get_output_root(config: IxCheckConfig, ixcheck_dir: Path) -> Path:
    """Get the run output root directory."""
    return resolve_path(ixcheck_dir, config.output_root)


def get_working_dir(config: IxCheckConfig, ixcheck_dir: Path) -> Path:
    """Get the engine working directory."""
    return resolve_path(ixcheck_dir, config.working_dir)


def get_db_password() -> str:
    """Database password handed to the engine, from the environment."""
    return os.environ.get(PASSWORD_ENV_VAR, "")
