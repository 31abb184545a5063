"""Loading, validating and saving the packrat TOML configuration."""

import os
import re
import tomllib
import warnings
from dataclasses import asdict, dataclass, field, fields
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import tomli_w


class ConfigError(Exception):
    """Base class for configuration problems."""


class ConfigNotFoundError(ConfigError):
    """The configuration file does not exist."""


class ConfigInvalidError(ConfigError):
    """The configuration could not be parsed or failed validation."""


@dataclass
class GeneralConfig:
    machine_name: str = ""
    machine_id: str = ""
    log_level: str = ""
    log_file: str = ""
    parallel_uploads: int = 0


@dataclass
class SchedulerConfig:
    enabled: bool = False
    default_interval: str = ""
    quiet_hours_start: str = ""
    quiet_hours_end: str = ""


@dataclass
class StorageConfig:
    backend: str = ""
    rclone_remote: str = ""
    remote_base_path: str = ""
    bandwidth_limit: str = ""


@dataclass
class EncryptionConfig:
    enabled: bool = False
    key_source: str = ""
    key_file: str = ""
    recipient: str = ""


@dataclass
class VersioningConfig:
    strategy: str = ""
    retention_count: int = 0
    retention_days: int = 0


@dataclass
class NotificationConfig:
    enabled: bool = False
    on_failure: bool = False
    on_success: bool = False
    webhook_url: str = ""


@dataclass
class BackupGroup:
    name: str = ""
    paths: list[str] = field(default_factory=list)
    encrypt: bool = False
    interval: str = ""
    exclude: list[str] = field(default_factory=list)
    include: list[str] = field(default_factory=list)

    def get_interval(self, default_interval: str) -> timedelta:
        """Return the effective interval, falling back to the default, then one hour."""
        try:
            return parse_duration(self.interval or default_interval or "1h")
        except ValueError:
            return timedelta(hours=1)


@dataclass
class HookConfig:
    name: str = ""
    when: str = ""
    command: str = ""
    timeout: str = ""
    fail_action: str = ""


def _build(cls: type, data: Any, section: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigInvalidError(f"{section}: expected a table")
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        expected = list if f.type == list[str] else f.type
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ConfigInvalidError(f"{section}.{f.name}: unexpected value {value!r}")
        kwargs[f.name] = list(value) if isinstance(value, list) else value
    return cls(**kwargs)


def _build_list(cls: type, data: Any, section: str) -> list:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigInvalidError(f"{section}: expected an array of tables")
    return [_build(cls, item, section) for item in data]


@dataclass
class Config:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    backups: list[BackupGroup] = field(default_factory=list)
    hooks: list[HookConfig] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the configuration as a TOML-shaped dictionary."""
        data = asdict(self)
        data["backup"] = data.pop("backups")
        data["hook"] = data.pop("hooks")
        return {key: value for key, value in data.items() if value != []}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Build a configuration from a TOML-shaped dictionary."""
        if not isinstance(data, dict):
            raise ConfigInvalidError("configuration must be a table")
        sections = {
            f.name: _build(f.type, data.get(f.name), f.name)
            for f in fields(cls)
            if f.name not in ("backups", "hooks")
        }
        return cls(
            **sections,
            backups=_build_list(BackupGroup, data.get("backup"), "backup"),
            hooks=_build_list(HookConfig, data.get("hook"), "hook"),
        )


_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1h30m", "90s" or "-1.5h"."""
    negative = text.startswith("-")
    body = text[1:] if text[:1] in ("+", "-") else text
    if body == "0":
        return timedelta(0)
    if not re.fullmatch(f"(?:{_PART})+", body):
        raise ValueError(f"invalid duration {text!r}")
    nanos = sum(
        Decimal(number) * _UNIT_NS[unit] for number, unit in re.findall(_PART, body)
    )
    micros = int(nanos // 1000)
    return timedelta(microseconds=-micros if negative else micros)


def expand_path(path: str) -> str:
    """Expand a leading "~" to the user's home directory."""
    return os.path.expanduser(path) if path else path


def load(path: str | os.PathLike[str]) -> Config:
    """Read and parse a TOML configuration file."""
    resolved = expand_path(os.fspath(path))
    try:
        raw = Path(resolved).read_bytes()
    except FileNotFoundError as exc:
        raise ConfigNotFoundError(f"config file not found: {resolved}") from exc
    except OSError as exc:
        raise ConfigError(f"reading config: {exc}") from exc
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigInvalidError(str(exc)) from exc

    config = Config.from_dict(data)
    if config.general.parallel_uploads == 0:
        config.general.parallel_uploads = 3
    config.general.log_file = expand_path(config.general.log_file)
    config.encryption.key_file = expand_path(config.encryption.key_file)
    for group in config.backups:
        group.paths = [expand_path(p) for p in group.paths]
    return config


def _duration_or_raise(text: str, message: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise ConfigInvalidError(message) from exc


def validate(config: Config) -> None:
    """Raise ConfigInvalidError if the configuration is not usable."""
    if not config.general.machine_id:
        raise ConfigInvalidError("machine_id is required")
    if not config.storage.rclone_remote:
        raise ConfigInvalidError("rclone_remote is required")
    uploads = config.general.parallel_uploads
    if not 1 <= uploads <= 10:
        raise ConfigInvalidError(f"parallel_uploads must be between 1 and 10 (got {uploads})")

    default_interval = config.scheduler.default_interval
    if default_interval:
        _duration_or_raise(default_interval, f"invalid default_interval {default_interval!r}")

    for group in config.backups:
        if not group.name:
            raise ConfigInvalidError("backup group must have a name")
        if not group.paths:
            raise ConfigInvalidError(f"backup group {group.name!r} has no paths")
        if group.interval:
            interval = _duration_or_raise(
                group.interval, f"invalid interval {group.interval!r} for group {group.name!r}"
            )
            if interval < timedelta(minutes=5):
                raise ConfigInvalidError(
                    f"interval for group {group.name!r} must be at least 5m (got {group.interval})"
                )

    for hook in config.hooks:
        if hook.when not in ("pre-backup", "post-backup"):
            raise ConfigInvalidError(
                f"hook {hook.name!r} has invalid when value {hook.when!r} "
                "(must be pre-backup or post-backup)"
            )
        if hook.fail_action not in ("", "continue", "abort"):
            raise ConfigInvalidError(
                f"hook {hook.name!r} has invalid fail_action {hook.fail_action!r}"
            )
        if hook.timeout:
            _duration_or_raise(
                hook.timeout, f"hook {hook.name!r} has invalid timeout {hook.timeout!r}"
            )

    encryption = config.encryption
    if encryption.enabled:
        if encryption.key_source not in ("keyring", "file", "prompt", ""):
            raise ConfigInvalidError(f"invalid key_source {encryption.key_source!r}")
        if encryption.key_source == "file" and not encryption.key_file:
            raise ConfigInvalidError("key_file is required when key_source is 'file'")

    seen: dict[str, str] = {}
    for group in config.backups:
        for p in group.paths:
            if p in seen:
                warnings.warn(
                    f"path {p!r} appears in both {seen[p]!r} and {group.name!r} backup groups",
                    stacklevel=2,
                )
            seen[p] = group.name


def save_config(path: str | os.PathLike[str], config: Config) -> None:
    """Write the configuration to a TOML file readable only by its owner."""
    resolved = Path(expand_path(os.fspath(path)))
    resolved.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(resolved, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(tomli_w.dumps(config.to_dict()))