"""Service configuration stored as TOML on disk."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import platformdirs
import tomli_w

from .errors import ConfigDirNotFoundError, ConfigParseError

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1


@dataclass
class KnownDevice:
    """A device the user has registered by address."""

    address: str
    name: str


@dataclass
class Config:
    """Settings of the service."""

    known_devices: list[KnownDevice] = field(default_factory=list)
    poll_interval: int = 30
    connection_retry_count: int = 10
    reconnect_delay_sec: int = 10
    notification_retries: int = 3
    log_filter: str | None = None

    @classmethod
    def load(cls) -> Config:
        """Read the configuration file, creating it with defaults if it is missing."""
        path = config_path()
        if path.exists():
            return cls.from_toml(path.read_text(encoding="utf-8"))
        config = cls()
        config.save()
        return config

    def save(self) -> None:
        """Write the configuration file, creating its directory if needed."""
        path = config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_toml(), encoding="utf-8")

    @classmethod
    def from_toml(cls, text: str) -> Config:
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigParseError(str(exc)) from exc

        log_filter = data.get("log_filter")
        if log_filter is not None and not isinstance(log_filter, str):
            raise ConfigParseError(f"invalid value for 'log_filter': {log_filter!r}")

        return cls(
            known_devices=_known_devices(data.get("known_devices", [])),
            poll_interval=_unsigned(data, "poll_interval", 30, _U64_MAX),
            connection_retry_count=_unsigned(data, "connection_retry_count", 10, _U32_MAX),
            reconnect_delay_sec=_unsigned(data, "reconnect_delay_sec", 10, _U64_MAX),
            notification_retries=_unsigned(data, "notification_retries", 3, _U32_MAX),
            log_filter=log_filter,
        )

    def to_toml(self) -> str:
        data: dict[str, Any] = {
            "known_devices": [
                {"address": d.address, "name": d.name} for d in self.known_devices
            ],
            "poll_interval": self.poll_interval,
            "connection_retry_count": self.connection_retry_count,
            "reconnect_delay_sec": self.reconnect_delay_sec,
            "notification_retries": self.notification_retries,
        }
        if self.log_filter is not None:
            data["log_filter"] = self.log_filter
        return tomli_w.dumps(data)

    def is_known_device(self, address: str) -> str | None:
        """The registered name for ``address``, or None if it is not known."""
        return next((d.name for d in self.known_devices if d.address == address), None)


def config_path() -> Path:
    """Location of the configuration file; AIRPODS_CONFIG_PATH overrides it."""
    override = os.environ.get("AIRPODS_CONFIG_PATH")
    if override:
        return Path(override)
    base = platformdirs.user_config_path()
    if not str(base):
        raise ConfigDirNotFoundError()
    return base / "kairpods" / "config.toml"


def _unsigned(data: dict[str, Any], key: str, default: int, maximum: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= maximum:
        raise ConfigParseError(f"invalid value for {key!r}: {value!r}")
    return value


def _known_devices(raw: Any) -> list[KnownDevice]:
    if not isinstance(raw, list):
        raise ConfigParseError(f"invalid value for 'known_devices': {raw!r}")
    devices = []
    for entry in raw:
        if not (
            isinstance(entry, dict)
            and isinstance(entry.get("address"), str)
            and isinstance(entry.get("name"), str)
        ):
            raise ConfigParseError(f"invalid known device entry: {entry!r}")
        devices.append(KnownDevice(entry["address"], entry["name"]))
    return devices