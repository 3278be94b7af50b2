"""Configuration loading for mcprobe."""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mcprobe.address import DEFAULT_PORT
from mcprobe.fingerprint import Pattern
from mcprobe.protocol import ProbeError

CONFIG_DIR = Path.home() / ".config" / "mcprobe"
CONFIG_FILE = CONFIG_DIR / "config.toml"
HISTORY_FILE = CONFIG_DIR / "history"


class ConfigError(ProbeError):
    """Raised when the configuration file contains invalid values."""


@dataclass(frozen=True)
class ProbeDefaults:
    """Defaults applied to every probe unless overridden on the command line."""

    timeout: float = 5.0
    protocol: int = 760
    srv: bool = True
    fingerprint: bool = True
    color: bool = True


@dataclass(frozen=True)
class ServerConfig:
    """A named server to probe."""

    name: str
    host: str
    port: int | None = None

    @property
    def address(self) -> str:
        """The address string; without a port, SRV records are honoured."""
        if self.port is None:
            return self.host
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class MirrorConfig:
    """Settings for the mcprobe-server status mirror."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = DEFAULT_PORT
    timeout: float = 5.0
    description: str = "An mcprobe server"
    version_name: str = "mcprobe"
    protocol: int = 762
    max_players: int = 20
    online_players: int = 3


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    default_server: str | None
    servers: dict[str, ServerConfig]
    defaults: ProbeDefaults = field(default_factory=ProbeDefaults)
    patterns: tuple[Pattern, ...] = ()
    mirror: MirrorConfig = field(default_factory=MirrorConfig)


def load_config(path: Path = CONFIG_FILE) -> AppConfig:
    """Load and parse the configuration file.

    Returns the built-in defaults if no config file exists.
    """
    if not path.exists():
        return _default_config()

    with path.open("rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid config file {path}: {e}"
            raise ConfigError(msg) from e

    defaults = raw.get("defaults", {})

    servers: dict[str, ServerConfig] = {}
    for key, val in raw.get("servers", {}).items():
        servers[key] = ServerConfig(
            name=val.get("name", key),
            host=val["host"],
            port=val.get("port"),
        )

    return AppConfig(
        default_server=defaults.get("server"),
        servers=servers,
        defaults=_build(ProbeDefaults, defaults),
        patterns=_parse_patterns(raw.get("fingerprint", {}).get("patterns", [])),
        mirror=_build(MirrorConfig, raw.get("mirror", {})),
    )


def _build(cls: type, raw: dict[str, Any]) -> Any:
    """Instantiate a settings dataclass from the keys it knows about."""
    known = {name: raw[name] for name in cls.__dataclass_fields__ if name in raw}
    return cls(**known)


def _parse_patterns(raw: list[dict[str, Any]]) -> tuple[Pattern, ...]:
    """Parse ``[[fingerprint.patterns]]`` entries."""
    patterns = []
    for i, entry in enumerate(raw):
        try:
            patterns.append(
                Pattern(
                    label=entry["label"],
                    literal=entry.get("literal"),
                    regex=entry.get("regex"),
                )
            )
        except (KeyError, ValueError, re.error) as e:
            msg = f"Invalid fingerprint pattern #{i + 1}: {e}"
            raise ConfigError(msg) from e
    return tuple(patterns)


def _default_config() -> AppConfig:
    """Return the hardcoded default configuration."""
    return AppConfig(
        default_server="local",
        servers={
            "local": ServerConfig(name="Local server", host="localhost"),
        },
    )


def ensure_config_dir() -> None:
    """Create the config directory if it does not exist."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
