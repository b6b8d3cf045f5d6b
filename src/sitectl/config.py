"""Configuration loader for sitectl.

Values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/sitectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITECTL_NGINX__SITES_AVAILABLE=/srv/nginx/sites-available
    export SITECTL_TLS__EMAIL=ops@example.com

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Locations and binaries for the nginx daemon."""

    bin: str = "nginx"
    main_config: Path = Path("/etc/nginx/nginx.conf")
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    service: str = "nginx"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "main_config": str(self.main_config),
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "service": self.service,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """OS package manager invocation."""

    manager: str = "apt-get"
    update_args: tuple[str, ...] = ("update",)
    install_args: tuple[str, ...] = ("install", "-y")
    daemon_packages: tuple[str, ...] = ("nginx",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "manager": self.manager,
            "update_args": list(self.update_args),
            "install_args": list(self.install_args),
            "daemon_packages": list(self.daemon_packages),
        }


@dataclass(frozen=True)
class TLSConfig:
    """ACME client and certificate settings."""

    certbot_bin: str = "certbot"
    email: str | None = None
    live_dir: Path = Path("/etc/letsencrypt/live")
    client_packages: tuple[str, ...] = ("certbot", "python3-certbot-nginx")
    renewal_schedule: str = "0 12 * * *"
    renewal_command: str = "/usr/bin/certbot renew --quiet"
    crontab_bin: str = "crontab"
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certbot_bin": self.certbot_bin,
            "email": self.email,
            "live_dir": str(self.live_dir),
            "client_packages": list(self.client_packages),
            "renewal_schedule": self.renewal_schedule,
            "renewal_command": self.renewal_command,
            "crontab_bin": self.crontab_bin,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    privilege_command: tuple[str, ...]
    nginx: NginxConfig
    packages: PackagesConfig
    tls: TLSConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "privilege_command": list(self.privilege_command),
            "nginx": self.nginx.to_dict(),
            "packages": self.packages.to_dict(),
            "tls": self.tls.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "logs_dir": "/var/log/sitectl",
    "runtime_dir": "/run/sitectl",
    "templates_dir": "/etc/sitectl/templates",
    "lock_timeout": 30.0,
    "command_timeout": 300.0,
    "privilege_command": [],
    "nginx": {
        "bin": "nginx",
        "main_config": "/etc/nginx/nginx.conf",
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "service": "nginx",
        "systemctl_bin": "systemctl",
    },
    "packages": {
        "manager": "apt-get",
        "update_args": ["update"],
        "install_args": ["install", "-y"],
        "daemon_packages": ["nginx"],
    },
    "tls": {
        "certbot_bin": "certbot",
        "email": None,
        "live_dir": "/etc/letsencrypt/live",
        "client_packages": ["certbot", "python3-certbot-nginx"],
        "renewal_schedule": "0 12 * * *",
        "renewal_command": "/usr/bin/certbot renew --quiet",
        "crontab_bin": "crontab",
        "warn_expiry_days": 30,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "nginx": set(cast(Mapping[str, object], DEFAULTS["nginx"]).keys()),
    "packages": set(cast(Mapping[str, object], DEFAULTS["packages"]).keys()),
    "tls": set(cast(Mapping[str, object], DEFAULTS["tls"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    for key in ("lock_timeout", "command_timeout"):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=1.0)

    tls_map = _as_dict(raw.get("tls"), "tls")
    warn_value = tls_map.get("warn_expiry_days")
    if warn_value is not None:
        if _expect_int(warn_value, "tls.warn_expiry_days", default=30) < 0:
            raise ConfigError("tls.warn_expiry_days must be non-negative.")
    schedule = tls_map.get("renewal_schedule")
    if schedule is not None and len(str(schedule).split()) != 5:
        raise ConfigError(
            f"tls.renewal_schedule must have five cron fields. Got {schedule!r}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        bin=str(nginx_mapping.get("bin", "nginx")),
        main_config=_to_path(nginx_mapping.get("main_config", "/etc/nginx/nginx.conf")),
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        service=str(nginx_mapping.get("service", "nginx")),
        systemctl_bin=str(nginx_mapping.get("systemctl_bin", "systemctl")),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        manager=str(packages_mapping.get("manager", "apt-get")),
        update_args=_as_str_tuple(packages_mapping.get("update_args", ()), "packages.update_args"),
        install_args=_as_str_tuple(
            packages_mapping.get("install_args", ()), "packages.install_args"
        ),
        daemon_packages=_as_str_tuple(
            packages_mapping.get("daemon_packages", ("nginx",)), "packages.daemon_packages"
        ),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    email_raw = tls_mapping.get("email")
    email = str(email_raw).strip() if email_raw not in (None, "") else None
    tls = TLSConfig(
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        email=email or None,
        live_dir=_to_path(tls_mapping.get("live_dir", "/etc/letsencrypt/live")),
        client_packages=_as_str_tuple(
            tls_mapping.get("client_packages", ("certbot",)), "tls.client_packages"
        ),
        renewal_schedule=str(tls_mapping.get("renewal_schedule", "0 12 * * *")).strip(),
        renewal_command=str(
            tls_mapping.get("renewal_command", "/usr/bin/certbot renew --quiet")
        ).strip(),
        crontab_bin=str(tls_mapping.get("crontab_bin", "crontab")),
        warn_expiry_days=_expect_int(
            tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(
            raw.get("lock_timeout"), "lock_timeout", default=30.0
        ),
        command_timeout=_expect_positive_float(
            raw.get("command_timeout"), "command_timeout", default=300.0
        ),
        privilege_command=_as_str_tuple(raw.get("privilege_command", ()), "privilege_command"),
        nginx=nginx,
        packages=packages,
        tls=tls,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Allow "sudo -n" style strings from the environment.
        return tuple(value.split())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list of strings. Got {type(value).__name__}.")
    return tuple(str(item) for item in value)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "NginxConfig",
    "PackagesConfig",
    "TLSConfig",
    "load_config",
]
