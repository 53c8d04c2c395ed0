"""Tests for persisted service and device configuration."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nvr_clips.config import ClipSource, ConfigManager, DeviceConfig, ServiceSettings
from nvr_clips.errors import ConfigError


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    assert manager.get_devices() == []
    settings = manager.get_service_settings()
    assert settings.public_url.endswith("/")
    assert settings.request_timeout_s == 10.0


def test_devices_round_trip_through_disk(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    manager = ConfigManager(path)
    manager.set_device({"device_id": "front", "host": "192.168.1.10", "username": "admin", "password": "pw"})
    manager.set_device({"device_id": "garage", "source": "filesystem", "root": "/srv/ftp/garage", "prefix": "Garage_"})

    reloaded = ConfigManager(path)

    front = reloaded.get_device("front")
    garage = reloaded.get_device("garage")
    assert front.source is ClipSource.REMOTE
    assert front.require_remote() == ("192.168.1.10", "admin", "pw")
    assert garage.source is ClipSource.FILESYSTEM
    assert garage.require_root() == Path("/srv/ftp/garage")
    assert json.loads(path.read_text(encoding="utf-8"))["devices"][1]["prefix"] == "Garage_"


def test_partial_update_merges_existing_device(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    manager.set_device({"device_id": "front", "host": "cam", "username": "admin", "password": "pw"})

    updated = manager.set_device({"device_id": "front", "channel": 2, "redirect_playback": True})

    assert updated.host == "cam"
    assert updated.channel == 2
    assert updated.redirect_playback is True


def test_remove_device(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    manager.set_device({"device_id": "front", "host": "cam"})

    assert manager.remove_device("front") is True
    assert manager.remove_device("front") is False
    with pytest.raises(KeyError):
        manager.get_device("front")


@pytest.mark.parametrize(
    "payload",
    [
        {"device_id": ""},
        {"device_id": "a/b"},
        {"device_id": "a\\b"},
        {"device_id": ".."},
        {"device_id": "."},
        {"device_id": "front", "source": "ftp"},
        {"device_id": "front", "channel": -1},
        {"device_id": "front", "stream_type": "ext"},
        {"device_id": "front", "scan_interval_s": 0},
        {"device_id": "front", "colour": "red"},
        {"host": "cam"},
    ],
)
def test_invalid_device_settings_are_rejected(payload: dict) -> None:
    with pytest.raises(ValueError):
        DeviceConfig.from_dict(payload)


def test_incomplete_devices_raise_config_error() -> None:
    with pytest.raises(ConfigError, match="username, password"):
        DeviceConfig(device_id="front", host="cam").require_remote()
    with pytest.raises(ConfigError):
        DeviceConfig(device_id="garage", source="filesystem").require_root()


def test_secrets_are_masked_on_request() -> None:
    config = DeviceConfig(device_id="front", host="cam", username="admin", password="pw")

    assert config.to_dict()["password"] == "pw"
    assert config.to_dict(include_secrets=False)["password"] == "********"


def test_service_settings(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    settings = manager.set_service_settings({"data_dir": str(tmp_path / "data"), "public_url": "http://nvr:8000/webhook"})

    assert settings.public_url == "http://nvr:8000/webhook/"
    assert settings.thumbnails_dir == tmp_path / "data" / "thumbnails"
    with pytest.raises(ValueError):
        ServiceSettings(request_timeout_s=-1)


def test_invalid_file_raises_runtime_error(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"devices": [{"device_id": "a"}, {"device_id": "a"}]}', encoding="utf-8")

    with pytest.raises(RuntimeError):
        ConfigManager(path)
