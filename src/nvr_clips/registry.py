"""Per-device handlers tying clip sources, thumbnails and schedules together."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Any, Callable

import httpx

from .catalog import ClipCatalog, VideoClip
from .config import DEFAULT_THUMBNAIL_PREFETCH_S, ClipSource, DeviceConfig
from .errors import ConfigError
from .filesystem import DirectoryScanner, ScanSnapshot
from .reolink import ReolinkClient, Session
from .scheduling import PeriodicTask
from .system_log import SystemLog
from .thumbnails import ThumbnailCache

logger = logging.getLogger(__name__)

PREFETCH_LOOKBACK_MS = 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class LocalTarget:
    """A recording served from the local filesystem."""

    path: Path


@dataclass(frozen=True, slots=True)
class RemoteTarget:
    """A recording fetched from the device over HTTP."""

    url: str


DeliveryTarget = LocalTarget | RemoteTarget


class DeviceHandler:
    """Runtime state of one configured device."""

    def __init__(
        self,
        config: DeviceConfig,
        catalog: ClipCatalog,
        thumbnails: ThumbnailCache,
        *,
        client: ReolinkClient | None = None,
        scanner: DirectoryScanner | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._thumbnails = thumbnails
        self._client = client
        self._scanner = scanner
        self._clock = clock
        self._battery: dict[str, Any] | None = None
        self._prefetcher = PeriodicTask(
            f"thumbnails-{config.device_id}",
            self._warm_recent_thumbnails,
            interval=config.thumbnail_prefetch_s or DEFAULT_THUMBNAIL_PREFETCH_S,
            logger=logger,
        )
        self._battery_poller: PeriodicTask | None = None
        if client is not None and config.battery_poll_s:
            self._battery_poller = PeriodicTask(
                f"battery-{config.device_id}",
                self.poll_battery,
                interval=config.battery_poll_s,
                logger=logger,
            )

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def device_id(self) -> str:
        return self._config.device_id

    @property
    def client(self) -> ReolinkClient | None:
        return self._client

    @property
    def scanner(self) -> DirectoryScanner | None:
        return self._scanner

    @property
    def battery(self) -> dict[str, Any] | None:
        return self._battery

    def start(self) -> None:
        if not self._config.enabled:
            return
        if self._client is not None:
            self._client.start()
        if self._scanner is not None:
            self._scanner.start()
        if self._config.thumbnail_prefetch_s is not None:
            self._prefetcher.start()
        if self._battery_poller is not None:
            self._battery_poller.start()

    async def aclose(self) -> None:
        await self._prefetcher.aclose()
        if self._battery_poller is not None:
            await self._battery_poller.aclose()
        if self._scanner is not None:
            await self._scanner.aclose()
        if self._client is not None:
            await self._client.aclose()

    async def list_clips(self, start: int, end: int) -> list[VideoClip]:
        return await self._catalog.list_clips(
            self._config, start, end, remote=self._client, scanner=self._scanner
        )

    async def resolve_delivery(self, clip_id: str) -> DeliveryTarget:
        """Locate the bytes of ``clip_id`` on disk or on the device.

        Raises :class:`ConfigError` when the device lacks the clip source it
        is configured for; source and session errors propagate.
        """

        if self._config.source is ClipSource.FILESYSTEM:
            if self._scanner is None:
                self._config.require_root()
                raise ConfigError(f"Device {self.device_id} has no directory scanner")
            return LocalTarget(path=self._scanner.resolve(clip_id))
        if self._client is None:
            self._config.require_remote()
            raise ConfigError(f"Device {self.device_id} has no remote client")
        locator = await self._client.resolve_playback_locator(clip_id)
        return RemoteTarget(url=locator.playback_url)

    async def get_thumbnail(self, clip_id: str, *, generate: bool = True) -> Path | None:
        async def _source() -> str:
            target = await self.resolve_delivery(clip_id)
            if isinstance(target, LocalTarget):
                return str(target.path)
            return target.url

        return await self._thumbnails.get(self.device_id, clip_id, _source, generate=generate)

    async def prefetch_thumbnails(self) -> bool:
        """Warm the cache for the last hour of clips unless a pass is running."""

        return await self._prefetcher.run_once()

    async def poll_battery(self) -> dict[str, Any] | None:
        if self._client is None:
            return None
        battery = await self._client.get_battery_info()
        self._battery = battery
        level = battery.get("batteryPercent")
        logger.debug("Battery of %s at %s%%", self.device_id, level)
        return battery

    async def _warm_recent_thumbnails(self) -> int:
        end = int(self._clock() * 1000)
        clips = await self.list_clips(end - PREFETCH_LOOKBACK_MS, end)
        generated = 0
        for clip in clips:
            if await self.get_thumbnail(clip.id) is not None:
                generated += 1
        if clips:
            logger.debug(
                "Thumbnail pass for %s covered %d of %d clips", self.device_id, generated, len(clips)
            )
        return generated

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "device_id": self.device_id,
            "name": self._config.name,
            "source": self._config.source.value,
            "enabled": self._config.enabled,
        }
        if self._client is not None:
            payload["session"] = self._client.state.value
        if self._scanner is not None:
            snapshot = self._scanner.snapshot
            payload["scan"] = {
                "entries": len(snapshot),
                "skipped": snapshot.skipped,
                "completed_at": snapshot.completed_at,
            }
        if self._battery is not None:
            payload["battery"] = self._battery
        return payload


class DeviceRegistry:
    """Create, look up and tear down :class:`DeviceHandler` instances."""

    def __init__(
        self,
        catalog: ClipCatalog,
        thumbnails: ThumbnailCache,
        *,
        system_log: SystemLog | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = 10.0,
        tz: tzinfo | None = None,
    ) -> None:
        self._catalog = catalog
        self._thumbnails = thumbnails
        self._system_log = system_log
        self._http_client = http_client
        self._request_timeout = float(request_timeout)
        self._tz = tz
        self._handlers: dict[str, DeviceHandler] = {}

    @property
    def catalog(self) -> ClipCatalog:
        return self._catalog

    @property
    def thumbnails(self) -> ThumbnailCache:
        return self._thumbnails

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def handlers(self) -> list[DeviceHandler]:
        return list(self._handlers.values())

    def get(self, device_id: str) -> DeviceHandler:
        try:
            return self._handlers[device_id]
        except KeyError:
            raise KeyError(f"Device not found: {device_id}") from None

    async def create(self, config: DeviceConfig) -> DeviceHandler:
        """Build and start the handler for ``config``, replacing any existing one."""

        if config.device_id in self._handlers:
            await self.destroy(config.device_id)
        client: ReolinkClient | None = None
        scanner: DirectoryScanner | None = None
        try:
            if config.source is ClipSource.REMOTE:
                host, username, password = config.require_remote()
                client = ReolinkClient(
                    host,
                    username,
                    password,
                    config.channel,
                    scheme="https" if config.use_https else "http",
                    stream_type=config.stream_type,
                    http_client=self._http_client,
                    timeout=self._request_timeout,
                    refresh_interval=config.session_refresh_s,
                    tz=self._tz,
                    on_login=self._login_listener(config.device_id),
                )
            else:
                scanner = DirectoryScanner(
                    config.require_root(),
                    prefix=config.prefix,
                    interval=config.scan_interval_s,
                    tz=self._tz,
                    on_snapshot=self._scan_listener(config.device_id),
                )
        except ConfigError as exc:
            logger.warning("Device %s is incompletely configured: %s", config.device_id, exc)
            self._record("config_incomplete", str(exc), config.device_id)

        handler = DeviceHandler(
            config,
            self._catalog,
            self._thumbnails,
            client=client,
            scanner=scanner,
        )
        self._handlers[config.device_id] = handler
        handler.start()
        logger.info("Device %s attached (%s)", config.device_id, config.source.value)
        self._record(
            "attached",
            f"Device {config.name or config.device_id} attached.",
            config.device_id,
            metadata={"source": config.source.value, "enabled": config.enabled},
        )
        return handler

    async def destroy(self, device_id: str) -> bool:
        handler = self._handlers.pop(device_id, None)
        if handler is None:
            return False
        await handler.aclose()
        logger.info("Device %s detached", device_id)
        self._record("detached", f"Device {device_id} detached.", device_id)
        return True

    async def aclose(self) -> None:
        for device_id in list(self._handlers):
            await self.destroy(device_id)

    def _login_listener(self, device_id: str) -> Callable[[Session], None]:
        def _on_login(session: Session) -> None:
            self._record(
                "login",
                f"Session for {device_id} renewed.",
                device_id,
                category="session",
                metadata={"lease_expiry": session.lease_expiry},
            )

        return _on_login

    def _scan_listener(self, device_id: str) -> Callable[[ScanSnapshot], None]:
        last_seen: tuple[int, int] | None = None

        def _on_snapshot(snapshot: ScanSnapshot) -> None:
            nonlocal last_seen
            seen = (len(snapshot), len(snapshot.errors))
            if seen == last_seen:
                return
            last_seen = seen
            self._record(
                "completed",
                f"Indexed {len(snapshot)} recordings for {device_id}.",
                device_id,
                category="scan",
                metadata={"skipped": snapshot.skipped or None, "errors": len(snapshot.errors) or None},
            )

        return _on_snapshot

    def _record(
        self,
        event: str,
        message: str,
        device_id: str,
        *,
        category: str = "device",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self._system_log is not None:
            self._system_log.record(
                category, event, message, device_id=device_id, metadata=metadata
            )


__all__ = [
    "DeliveryTarget",
    "DeviceHandler",
    "DeviceRegistry",
    "LocalTarget",
    "RemoteTarget",
]
