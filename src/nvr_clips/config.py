"""Configuration management for the clip service."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from .errors import ConfigError

DEFAULT_DATA_DIR = Path(os.environ.get("NVRCLIPS_DATA_DIR", "data"))
DEFAULT_CONFIG_PATH = Path(os.environ.get("NVRCLIPS_CONFIG", DEFAULT_DATA_DIR / "config.json"))
DEFAULT_PUBLIC_URL = os.environ.get("NVRCLIPS_PUBLIC_URL", "http://localhost:8000/webhook/")

DEFAULT_SCAN_INTERVAL_S = 60.0
DEFAULT_SESSION_REFRESH_S = 1800.0
DEFAULT_THUMBNAIL_PREFETCH_S = 30.0
DEFAULT_REQUEST_TIMEOUT_S = 10.0


class ClipSource(str, Enum):
    """Where the clips of a device are listed from."""

    REMOTE = "remote"
    FILESYSTEM = "filesystem"


def _positive_interval(value: Any, label: str, *, optional: bool = False) -> float | None:
    if value is None:
        if optional:
            return None
        raise ValueError(f"{label} must be provided")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be numeric") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{label} must be a positive number of seconds")
    return number


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    """Connection and indexing options for one camera or hub channel."""

    device_id: str
    name: str | None = None
    source: ClipSource = ClipSource.REMOTE
    host: str | None = None
    username: str | None = None
    password: str | None = None
    channel: int = 0
    use_https: bool = False
    stream_type: str = "main"
    root: str | None = None
    prefix: str | None = None
    enabled: bool = True
    redirect_playback: bool = False
    scan_interval_s: float = DEFAULT_SCAN_INTERVAL_S
    session_refresh_s: float = DEFAULT_SESSION_REFRESH_S
    thumbnail_prefetch_s: float | None = DEFAULT_THUMBNAIL_PREFETCH_S
    battery_poll_s: float | None = None

    def __post_init__(self) -> None:
        device_id = _clean_text(self.device_id)
        if device_id is None:
            raise ValueError("Device id must not be empty")
        if device_id in {".", ".."} or any(char in device_id for char in "/\\\0"):
            raise ValueError("Device id must be a plain name without path separators")
        object.__setattr__(self, "device_id", device_id)
        source = self.source
        if not isinstance(source, ClipSource):
            try:
                source = ClipSource(str(source).strip().lower())
            except ValueError as exc:
                raise ValueError(f"Unknown clip source {self.source!r}") from exc
            object.__setattr__(self, "source", source)
        for field_name in ("name", "host", "username", "root", "prefix"):
            object.__setattr__(self, field_name, _clean_text(getattr(self, field_name)))
        try:
            channel = int(self.channel)
        except (TypeError, ValueError) as exc:
            raise ValueError("Channel must be an integer") from exc
        if channel < 0:
            raise ValueError("Channel must not be negative")
        object.__setattr__(self, "channel", channel)
        if self.stream_type not in {"main", "sub"}:
            raise ValueError("Stream type must be 'main' or 'sub'")
        object.__setattr__(
            self, "scan_interval_s", _positive_interval(self.scan_interval_s, "Scan interval")
        )
        object.__setattr__(
            self,
            "session_refresh_s",
            _positive_interval(self.session_refresh_s, "Session refresh interval"),
        )
        object.__setattr__(
            self,
            "thumbnail_prefetch_s",
            _positive_interval(
                self.thumbnail_prefetch_s, "Thumbnail prefetch interval", optional=True
            ),
        )
        object.__setattr__(
            self,
            "battery_poll_s",
            _positive_interval(self.battery_poll_s, "Battery poll interval", optional=True),
        )

    def require_remote(self) -> tuple[str, str, str]:
        """Return ``(host, username, password)`` or raise :class:`ConfigError`."""

        missing = [
            label
            for label, value in (
                ("host", self.host),
                ("username", self.username),
                ("password", self.password),
            )
            if not value
        ]
        if missing:
            raise ConfigError(
                f"Device {self.device_id} is missing {', '.join(missing)}"
            )
        assert self.host and self.username and self.password is not None
        return self.host, self.username, self.password

    def require_root(self) -> Path:
        if not self.root:
            raise ConfigError(f"Device {self.device_id} has no recordings directory")
        return Path(self.root)

    def to_dict(self, *, include_secrets: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        payload["source"] = self.source.value
        if not include_secrets:
            payload["password"] = "********" if self.password else None
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DeviceConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown device settings: {', '.join(unknown)}")
        if "device_id" not in payload:
            raise ValueError("Device id must be provided")
        return cls(**dict(payload))


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Service wide options shared by every device."""

    data_dir: str = str(DEFAULT_DATA_DIR)
    public_url: str = DEFAULT_PUBLIC_URL
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S

    def __post_init__(self) -> None:
        data_dir = _clean_text(self.data_dir)
        if data_dir is None:
            raise ValueError("Data directory must not be empty")
        object.__setattr__(self, "data_dir", data_dir)
        public_url = _clean_text(self.public_url)
        if public_url is None:
            raise ValueError("Public URL must not be empty")
        if not public_url.endswith("/"):
            public_url += "/"
        object.__setattr__(self, "public_url", public_url)
        object.__setattr__(
            self,
            "request_timeout_s",
            _positive_interval(self.request_timeout_s, "Request timeout"),
        )

    @property
    def thumbnails_dir(self) -> Path:
        return Path(self.data_dir) / "thumbnails"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_service(value: Any) -> ServiceSettings:
    if value is None:
        return ServiceSettings()
    if not isinstance(value, Mapping):
        raise ValueError("Service settings must be a JSON object")
    known = set(ServiceSettings.__dataclass_fields__)
    return ServiceSettings(**{k: v for k, v in value.items() if k in known})


def _parse_devices(value: Any) -> dict[str, DeviceConfig]:
    if value is None:
        return {}
    if not isinstance(value, list):
        raise ValueError("Devices must be a JSON array")
    devices: dict[str, DeviceConfig] = {}
    for entry in value:
        if not isinstance(entry, Mapping):
            raise ValueError("Each device must be a JSON object")
        device = DeviceConfig.from_dict(entry)
        if device.device_id in devices:
            raise ValueError(f"Duplicate device id {device.device_id!r}")
        devices[device.device_id] = device
    return devices


class ConfigManager:
    """Stores service and device configuration on disk with thread-safety."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._service, self._devices = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> tuple[ServiceSettings, dict[str, DeviceConfig]]:
        if not self._path.exists():
            return ServiceSettings(), {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return _parse_service(payload.get("service")), _parse_devices(payload.get("devices"))
        except (OSError, ValueError, TypeError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload = {
            "service": self._service.to_dict(),
            "devices": [device.to_dict() for device in self._devices.values()],
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_service_settings(self) -> ServiceSettings:
        with self._lock:
            return self._service

    def set_service_settings(self, data: Mapping[str, Any]) -> ServiceSettings:
        with self._lock:
            settings = _parse_service({**self._service.to_dict(), **dict(data)})
            self._service = settings
            self._save()
        return settings

    def get_devices(self) -> list[DeviceConfig]:
        with self._lock:
            return list(self._devices.values())

    def get_device(self, device_id: str) -> DeviceConfig:
        with self._lock:
            try:
                return self._devices[device_id]
            except KeyError:
                raise KeyError(f"Unknown device {device_id!r}") from None

    def set_device(self, data: Mapping[str, Any] | DeviceConfig) -> DeviceConfig:
        with self._lock:
            if isinstance(data, DeviceConfig):
                device = data
            else:
                existing = self._devices.get(str(data.get("device_id", "")).strip())
                if existing is not None:
                    device = DeviceConfig.from_dict({**existing.to_dict(), **dict(data)})
                else:
                    device = DeviceConfig.from_dict(data)
            self._devices[device.device_id] = device
            self._save()
        return device

    def remove_device(self, device_id: str) -> bool:
        with self._lock:
            removed = self._devices.pop(device_id, None) is not None
            if removed:
                self._save()
        return removed


__all__ = [
    "ClipSource",
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATA_DIR",
    "DEFAULT_PUBLIC_URL",
    "DeviceConfig",
    "ServiceSettings",
]
