"""Settings loader for rcommand."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_CONCURRENCY = 5


@dataclass
class Settings:
    """Connection and run settings shared by every host."""

    user: str | None = None
    port: int = 22
    ssh_key: Path | None = None
    known_hosts: str | None = None  # None skips host key verification
    connect_timeout: int = 30
    concurrency: int = DEFAULT_CONCURRENCY
    term_type: str = "xterm"
    remote_tmpdir: str = "/tmp"
    log_dir: Path | None = None
    host_groups: dict[str, list[str]] = field(default_factory=dict)
    source_path: Path | None = None  # Path to the settings file, if any


@dataclass(frozen=True)
class HostSpec:
    """One target host as given on the command line."""

    name: str
    host: str
    port: int | None = None
    user: str | None = None


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load and validate settings from a YAML file.

    Without a path the built-in defaults are returned.
    """
    if config_path is None:
        return Settings()

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    settings = _parse_settings(raw)
    settings.source_path = config_path
    return settings


def _parse_settings(raw: dict[str, Any]) -> Settings:
    """Parse raw YAML data into a Settings object."""
    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigError("'defaults' must be a mapping")

    ssh_key = defaults_raw.get("ssh_key")
    log_dir = raw.get("log_dir")

    settings = Settings(
        user=defaults_raw.get("user"),
        port=_positive_int(defaults_raw, "port", 22),
        ssh_key=Path(ssh_key).expanduser() if ssh_key else None,
        known_hosts=defaults_raw.get("known_hosts"),
        connect_timeout=_positive_int(defaults_raw, "connect_timeout", 30),
        concurrency=_positive_int(defaults_raw, "concurrency", DEFAULT_CONCURRENCY),
        term_type=defaults_raw.get("term_type", "xterm"),
        remote_tmpdir=defaults_raw.get("remote_tmpdir", "/tmp"),
        log_dir=Path(log_dir).expanduser().resolve() if log_dir else None,
        host_groups=_parse_host_groups(raw.get("host_groups") or {}),
    )
    return settings


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive integer, got {value!r}")
    return value


def _parse_host_groups(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        raise ConfigError("'host_groups' must be a mapping of name to host list")

    groups = {}
    for name, hosts in raw.items():
        if isinstance(hosts, str):
            hosts = hosts.split()
        if not isinstance(hosts, list) or not all(isinstance(h, str) for h in hosts):
            raise ConfigError(f"Host group '{name}' must be a list of host names")
        groups[str(name)] = hosts
    return groups


def resolve_hosts(hosts_raw: list[str], host_groups: dict[str, list[str]]) -> list[HostSpec]:
    """Resolve ``@group`` references and parse each host.

    Duplicates are dropped, keeping the position of the first occurrence.
    """
    names: list[str] = []

    for entry in hosts_raw:
        if entry.startswith("@"):
            group = entry[1:]
            if group not in host_groups:
                raise ConfigError(f"Unknown host group: {group}")
            names.extend(host_groups[group])
        else:
            names.append(entry)

    seen = set()
    specs = []
    for name in names:
        name = name.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        specs.append(parse_host(name))
    return specs


def parse_host(name: str) -> HostSpec:
    """Parse ``[user@]host[:port]``; IPv6 addresses need ``[addr]:port``."""
    user = None
    rest = name
    if "@" in rest:
        user, rest = rest.rsplit("@", 1)
        if not user:
            raise ConfigError(f"Empty user in host: {name}")

    port = None
    if rest.startswith("["):
        addr, sep, tail = rest[1:].partition("]")
        if not sep:
            raise ConfigError(f"Unterminated '[' in host: {name}")
        if tail:
            if not tail.startswith(":"):
                raise ConfigError(f"Invalid host: {name}")
            port = _parse_port(tail[1:], name)
        rest = addr
    elif rest.count(":") == 1:
        rest, port_str = rest.split(":")
        port = _parse_port(port_str, name)

    if not rest:
        raise ConfigError(f"Empty host name: {name}")
    return HostSpec(name=name, host=rest, port=port, user=user)


def _parse_port(value: str, name: str) -> int:
    if not value.isdigit() or not 0 < int(value) < 65536:
        raise ConfigError(f"Invalid port in host: {name}")
    return int(value)
