"""Settings resolution and the application context for sshed.

Settings are layered: built-in defaults, then an optional YAML settings file
(~/.config/sshed/settings.yaml or SSHED_SETTINGS), then SSHED_* environment
variables, then explicit CLI options.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from sshed.errors import ConfigError
from sshed.keychain import Keychain
from sshed.sshconfig import SSHConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

APP_NAME = "sshed"
DEFAULT_SETTINGS_PATH = Path.home() / ".config" / APP_NAME / "settings.yaml"
ENV_SETTINGS_VAR = "SSHED_SETTINGS"
SUPPORTED_SETTINGS_VERSION = 1

# setting name -> environment variable
ENV_VARS: dict[str, str] = {
    "keychain": "SSHED_KEYCHAIN",
    "config": "SSHED_CONFIG_FILE",
    "backup_dir": "SSHED_BACKUP_DIR",
    "ssh_path": "SSHED_SSH_BIN",
    "scp_path": "SSHED_SCP_BIN",
    "sshpass_path": "SSHED_SSHPASS_BIN",
}

_PATH_SETTINGS = ("keychain", "config", "backup_dir")

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Settings:
    """Resolved paths and binary names."""

    keychain: Path = Path.home() / ".sshed" / "keychain"
    config: Path = Path.home() / ".ssh" / "config"
    backup_dir: Path = Path.home() / ".sshed" / "backup"
    ssh_path: str = "ssh"
    scp_path: str = "scp"
    sshpass_path: str = "sshpass"


@dataclass(slots=True)
class AppContext:
    """Handle threaded through every command instead of process-wide globals.

    Built once after settings resolution; ``registry`` and ``keychain`` are
    opened lazily so commands that need neither (``config``, ``backup``) never
    touch them.
    """

    settings: Settings
    _registry: SSHConfig | None = None
    _keychain: Keychain | None = None

    @property
    def registry(self) -> SSHConfig:
        if self._registry is None:
            self._registry = SSHConfig.parse(self.settings.config)
        return self._registry

    @property
    def keychain(self) -> Keychain:
        if self._keychain is None:
            self._keychain = Keychain.open(self.settings.keychain)
        return self._keychain


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def get_settings_path(env: Mapping[str, str] | None = None) -> Path:
    """Determine which settings file to read."""
    env = os.environ if env is None else env
    override = env.get(ENV_SETTINGS_VAR)
    if override:
        return Path(override).expanduser()
    return DEFAULT_SETTINGS_PATH


def _load_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read settings file {path}: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file {path} must be a YAML mapping at the top level.")

    version = raw.pop("version", SUPPORTED_SETTINGS_VERSION)
    if version != SUPPORTED_SETTINGS_VERSION:
        raise ConfigError(
            f"Unsupported settings version {version}. Expected {SUPPORTED_SETTINGS_VERSION}."
        )

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown setting(s) in {path}: {', '.join(unknown)}")

    return {k: str(v) for k, v in raw.items() if v is not None}


def load_settings(
    overrides: Mapping[str, str | Path | None] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    settings_path: Path | None = None,
) -> Settings:
    """Resolve settings from defaults, settings file, environment, and overrides."""
    env = os.environ if env is None else env
    path = settings_path or get_settings_path(env)

    values: dict[str, Any] = _load_settings_file(path)
    if values:
        logger.debug("Loaded settings from %s: %s", path, ", ".join(sorted(values)))

    for name, var in ENV_VARS.items():
        if env.get(var):
            values[name] = env[var]

    for name, value in (overrides or {}).items():
        if value is not None and value != "":
            values[name] = value

    for name in _PATH_SETTINGS:
        if name in values:
            values[name] = Path(values[name]).expanduser()

    return replace(Settings(), **values)
