"""
TOML-based configuration for the DID registry node.

Sections mirror the TOML tables: [registry], [api], [storage], [logging].
DIDREG_* environment variables win over file values.

Usage:
    from didregistry_core.config import load_config
    cfg = load_config("didregistry.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class RegistryConfig:
    """Core registry behaviour."""
    did_method: str = "dreg"            # URI form: did:<method>:<hex>
    validate_key_points: bool = True    # reject off-curve points on known curves
    event_history: int = 10_000         # events kept for /events and WS catch-up
    initial_counter: int = 0


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST/DELETE (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536
    # Set by the authenticating proxy in front of the API.
    identity_header: str = "X-Caller-Identity"


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    backend: str = "sqlite"
    path: str = "data/didregistry.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class DIDRegistryConfig:
    """Top-level configuration container."""
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(section: Any, raw: dict[str, Any]) -> None:
    """Copy known keys of a TOML table onto *section*; kebab-case allowed."""
    for key, value in raw.items():
        attr = key.replace("-", "_")
        if hasattr(section, attr):
            setattr(section, attr, value)


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# env var -> (section, field, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "DIDREG_METHOD": ("registry", "did_method", str),
    "DIDREG_API_HOST": ("api", "host", str),
    "DIDREG_API_PORT": ("api", "port", int),
    "DIDREG_API_KEY": ("api", "api_key", str),
    "DIDREG_CORS_ORIGINS": ("api", "cors_origins", _csv),
    "DIDREG_DB_PATH": ("storage", "path", str),
    "DIDREG_LOG_LEVEL": ("logging", "level", str.upper),
    "DIDREG_LOG_FMT": ("logging", "format", str),
}

# Setting one of these also switches its section on.
_ENABLING_VARS = frozenset({"DIDREG_API_PORT", "DIDREG_DB_PATH"})


def load_config(path: str | None = None) -> DIDRegistryConfig:
    """
    Build a config from defaults, an optional TOML file, then the
    ``DIDREG_*`` environment variables listed in ``ENV_OVERRIDES``.

    A missing file is not an error.  Empty env vars are ignored.
    """
    cfg = DIDRegistryConfig()

    if path is not None and Path(path).exists():
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
        for section in fields(cfg):
            raw = data.get(section.name)
            if isinstance(raw, dict):
                _merge(getattr(cfg, section.name), raw)

    for var, (section_name, attr, parse) in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if not value:
            continue
        section = getattr(cfg, section_name)
        setattr(section, attr, parse(value))
        if var in _ENABLING_VARS:
            section.enabled = True

    return cfg
