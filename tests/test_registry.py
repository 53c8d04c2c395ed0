"""Tests for device handlers and the registry."""

from __future__ import annotations

import asyncio
import time
from datetime import timezone
from pathlib import Path

import pytest

pytest.importorskip("av")

import httpx

from nvr_clips.catalog import ClipCatalog, WebhookUrlBuilder
from nvr_clips.config import DeviceConfig
from nvr_clips.errors import ConfigError
from nvr_clips.registry import DeviceRegistry, LocalTarget, RemoteTarget
from nvr_clips.system_log import SystemLog
from nvr_clips.thumbnails import ThumbnailCache

UTC = timezone.utc


class FakeExtractor:
    def __init__(self) -> None:
        self.sources: list[str] = []

    async def extract_jpeg(self, source: str, offset_s: float) -> bytes:
        self.sources.append(source)
        return b"\xff\xd8jpeg"


def _device_transport(request: httpx.Request) -> httpx.Response:
    cmd = request.url.params.get("cmd")
    if cmd == "Login":
        return httpx.Response(
            200, json=[{"cmd": "Login", "code": 0, "value": {"Token": {"leaseTime": 3600, "name": "tok"}}}]
        )
    if cmd == "GetBatteryInfo":
        return httpx.Response(
            200, json=[{"cmd": cmd, "code": 0, "value": {"Battery": {"batteryPercent": 64}}}]
        )
    return httpx.Response(200, json=[{"cmd": cmd, "code": 0, "value": {}}])


def _registry(tmp_path: Path, extractor: FakeExtractor, **kwargs) -> DeviceRegistry:
    return DeviceRegistry(
        ClipCatalog(WebhookUrlBuilder("http://nvr/webhook/"), tz=UTC),
        ThumbnailCache(tmp_path / "thumbnails", extractor),
        tz=UTC,
        **kwargs,
    )


def _recent_recording(root: Path) -> Path:
    stamp = time.strftime("%Y%m%d%H%M%S", time.gmtime(time.time() - 600))
    path = root / f"Shed_{stamp}.mp4"
    path.write_bytes(b"video")
    return path


def test_prefetch_warms_thumbnails_for_recent_clips(tmp_path: Path) -> None:
    root = tmp_path / "recordings"
    root.mkdir()
    recording = _recent_recording(root)
    (root / "Shed_20000101000000.mp4").write_bytes(b"old")
    extractor = FakeExtractor()
    log = SystemLog()

    async def scenario() -> None:
        registry = _registry(tmp_path, extractor, system_log=log)
        config = DeviceConfig(
            device_id="shed", source="filesystem", root=str(root), thumbnail_prefetch_s=None
        )
        handler = await registry.create(config)
        try:
            await handler.scanner.refresh()
            assert await handler.prefetch_thumbnails() is True
        finally:
            await registry.aclose()

    asyncio.run(scenario())

    assert extractor.sources == [str(recording.resolve())]
    assert (tmp_path / "thumbnails" / "shed" / f"{recording.stem}.jpg").exists()
    events = [(entry.category, entry.event) for entry in log.tail()]
    assert ("device", "attached") in events
    assert ("scan", "completed") in events
    assert events[-1] == ("device", "detached")


def test_remote_handler_resolves_playback_and_polls_battery(tmp_path: Path) -> None:
    log = SystemLog()

    async def scenario() -> None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(_device_transport))
        registry = _registry(tmp_path, FakeExtractor(), system_log=log, http_client=http_client)
        config = DeviceConfig(
            device_id="front",
            host="cam",
            username="admin",
            password="pw",
            use_https=True,
            thumbnail_prefetch_s=None,
        )
        handler = await registry.create(config)
        try:
            target = await handler.resolve_delivery("Mp4Record/a.mp4")
            assert isinstance(target, RemoteTarget)
            assert target.url.startswith("https://cam/cgi-bin/api.cgi?cmd=Playback&source=Mp4Record/a.mp4")
            battery = await handler.poll_battery()
            assert battery == {"batteryPercent": 64}
            assert handler.to_dict()["battery"] == {"batteryPercent": 64}
            assert handler.to_dict()["session"] == "authenticated"
        finally:
            await registry.aclose()
            await http_client.aclose()

    asyncio.run(scenario())

    assert ("session", "login") in {(entry.category, entry.event) for entry in log.tail()}


def test_incomplete_device_is_attached_without_source(tmp_path: Path) -> None:
    async def scenario() -> None:
        registry = _registry(tmp_path, FakeExtractor())
        handler = await registry.create(DeviceConfig(device_id="front", host="cam", thumbnail_prefetch_s=None))
        try:
            assert handler.client is None
            assert await handler.list_clips(0, 1_000) == []
            with pytest.raises(ConfigError):
                await handler.resolve_delivery("a.mp4")
            assert await handler.get_thumbnail("a.mp4") is None
        finally:
            await registry.aclose()

    asyncio.run(scenario())


def test_registry_lookup_and_replacement(tmp_path: Path) -> None:
    root = tmp_path / "recordings"
    root.mkdir()
    (root / "clip.mp4").write_bytes(b"x")

    async def scenario() -> None:
        registry = _registry(tmp_path, FakeExtractor())
        config = DeviceConfig(device_id="shed", source="filesystem", root=str(root), thumbnail_prefetch_s=None)
        first = await registry.create(config)
        second = await registry.create(config)
        try:
            assert registry.get("shed") is second
            assert second is not first
            assert len(registry) == 1
            assert isinstance(await second.resolve_delivery("clip.mp4"), LocalTarget)
            with pytest.raises(KeyError):
                registry.get("missing")
            assert await registry.destroy("shed") is True
            assert await registry.destroy("shed") is False
            assert "shed" not in registry
        finally:
            await registry.aclose()

    asyncio.run(scenario())
