# Copyright (c) Syntropy Systems
"""Configuration management for mountsweep."""
from __future__ import annotations

import dataclasses
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from mountsweep.errors import ConfigError

logger = logging.getLogger(__name__)

PROJECT_DIR_NAME = ".mountsweep"

DEFAULT_TIER_PRIORITY = (
    "bindfs",
    "smb",
    "loopback",
    "direct-nfs",
    "autofs",
    "mergerfs",
    "individual",
)

DEFAULT_TEST_DIRS = ("caddy", "actual-budget", "homer", "vaultwarden", "seafile")


@dataclass(frozen=True)
class SweepSettings:
    """Immutable settings passed to every sweep component."""

    # Server as seen from the client (NFS/SMB source host)
    server_host: str = field(default_factory=socket.gethostname)

    # Client reached over SSH
    remote_host: str = ""
    remote_user: str = "root"

    # Dataset tree under test
    export_path: str = "/mnt/data-tank/docker"
    test_dirs: tuple[str, ...] = DEFAULT_TEST_DIRS
    smb_share_name: str = "docker"
    smb_password: str = ""
    smb_credentials_path: str = ""

    # Client mount points
    mount_point: str = "/mnt/nfs-test"
    staging_mount: str = "/mnt/nfs-temp"
    bindfs_mount: str = "/mnt/bindfs-test"
    smb_mount: str = "/mnt/smb-test"
    loopback_export_dir: str = "/tmp/nfs-export"  # noqa: S108
    loopback_mount: str = "/mnt/nfs-loopback"
    union_mount: str = "/mnt/unionfs-test"
    autofs_root: str = "/autofs"
    individual_root: str = "/mnt/nfs-individual"
    default_nfs_options: str = "rw,hard"

    # ZFS fixtures
    zfs_base_dataset: str = "data-tank/docker"
    real_datasets: tuple[str, ...] = ("jellyfin", "caddy", "vaultwarden")

    # Timing (seconds)
    settle_timeout: float = 3.0
    command_timeout: float = 60.0
    connect_timeout: int = 10
    retry_backoff: float = 5.0

    # Probe scan depth; None scans the whole tree
    max_depth: int | None = None

    # Recommendation order, best first
    tier_priority: tuple[str, ...] = DEFAULT_TIER_PRIORITY

    # Output locations; relative paths resolve against the project dir
    results_dir: Path = Path("results")
    backup_dir: Path = Path("backups")

    @property
    def credentials_path(self) -> str:
        """SMB credentials file on the client."""
        if self.smb_credentials_path:
            return self.smb_credentials_path
        home = "/root" if self.remote_user == "root" else f"/home/{self.remote_user}"
        return f"{home}/.smbcredentials-test"

    def with_overrides(self, **overrides: object) -> SweepSettings:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            msg = f"Unknown setting(s): {', '.join(sorted(unknown))}"
            raise ConfigError(msg)
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .mountsweep directory by walking up from start_path.

    Returns None if no .mountsweep directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global mountsweep config directory (~/.mountsweep)."""
    return Path.home() / PROJECT_DIR_NAME


def _coerce(name: str, default: object, value: object) -> object:
    """Convert a YAML value to the type of a settings field default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, tuple):
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in cast("list[object]", value))
    elif isinstance(default, Path):
        if isinstance(value, str):
            return Path(value)
    elif isinstance(default, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(default, int):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    elif default is None:
        # Only max_depth is optional
        if value is None or (isinstance(value, int) and not isinstance(value, bool)):
            return value
    elif isinstance(value, (str, int, float)):
        return str(value)

    msg = f"Invalid value for '{name}': {value!r}"
    raise ConfigError(msg)


def settings_from_mapping(data: dict[str, object]) -> SweepSettings:
    """Build settings from a parsed config mapping, validating each value."""
    defaults = SweepSettings()
    values: dict[str, object] = {}
    known = {f.name for f in dataclasses.fields(SweepSettings)}

    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key '%s'", key)
            continue
        values[key] = _coerce(key, getattr(defaults, key), value)

    return dataclasses.replace(defaults, **values)  # type: ignore[arg-type]


def load_config(project_dir: Path | None = None) -> SweepSettings:
    """Load settings from .mountsweep/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .mountsweep directory walking up
    3. ~/.mountsweep/config.yaml
    4. Defaults

    Relative output directories resolve against the directory holding the
    config file.
    """
    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    data: dict[str, object] = {}
    if config_path is not None and config_path.exists():
        try:
            with config_path.open() as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            msg = f"Cannot parse {config_path}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(loaded, dict):
            msg = f"{config_path} must contain a mapping"
            raise ConfigError(msg)
        data = cast("dict[str, object]", loaded)

    settings = settings_from_mapping(data)

    base = config_path.parent if config_path is not None else Path.cwd() / PROJECT_DIR_NAME
    return dataclasses.replace(
        settings,
        results_dir=base / settings.results_dir,
        backup_dir=base / settings.backup_dir,
    )
