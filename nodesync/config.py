"""Runtime settings.

Settings come from ``NODESYNC_*`` environment variables, optionally overlaid
on a YAML file named by ``NODESYNC_CONFIG``. Environment variables win over
the file so a container can override a baked-in config.

Example ``nodesync.yaml``::

    database_url: sqlite:////var/lib/nodesync/nodesync.db
    admin_token: change-me
    http_timeout: 10
    stale_factor: 3
    log_level: INFO
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from nodesync.errors import ValidationError

DEFAULT_DATABASE_URL = f"sqlite:///{Path.home() / '.nodesync' / 'nodesync.db'}"

# Followers may not pull more often than this.
MIN_SYNC_INTERVAL = 10
DEFAULT_SYNC_INTERVAL = 60
DEFAULT_NODE_PORT = 3001


@dataclass
class Settings:
    """Process-wide settings."""

    database_url: str = DEFAULT_DATABASE_URL
    admin_token: str = ""
    http_timeout: float = 10.0
    sync_timeout: float = 30.0
    stale_factor: int = 3
    stale_min_seconds: int = 300
    log_level: str = "INFO"
    log_file: str = ""

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        values: dict = {}

        config_path = env.get("NODESYNC_CONFIG", "")
        if config_path:
            values.update(load_settings_file(config_path))

        for f in fields(cls):
            raw = env.get(f"NODESYNC_{f.name.upper()}")
            if raw is not None:
                values[f.name] = raw

        return cls(**_coerce(values))


def load_settings_file(path: str | Path) -> dict:
    """Read a YAML settings file, keeping only known keys."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValidationError("Settings file must contain a mapping", details=str(path))
    known = {f.name for f in fields(Settings)}
    return {k: v for k, v in data.items() if k in known}


def _coerce(values: dict) -> dict:
    out = dict(values)
    try:
        for key in ("http_timeout", "sync_timeout"):
            if key in out:
                out[key] = float(out[key])
        for key in ("stale_factor", "stale_min_seconds"):
            if key in out:
                out[key] = int(out[key])
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid numeric setting", details=str(exc)) from exc
    for key in ("database_url", "admin_token", "log_level", "log_file"):
        if key in out and out[key] is not None:
            out[key] = str(out[key])
    return out


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the cached process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def configure(settings: Settings) -> None:
    """Replace the cached settings (tests and the CLI use this)."""
    global _settings
    _settings = settings
