"""Normalise clips from the remote search API and exported directories."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any
from urllib.parse import quote

from .config import ClipSource, DeviceConfig
from .date_ranges import split_date_range_by_day
from .errors import ConfigError, SessionError
from .filename_flags import decode_filename
from .filesystem import DirectoryScanner, ScanEntry
from .reolink import ReolinkClient, SearchHit

logger = logging.getLogger(__name__)

CLIP_EVENT = "motion"
FILESYSTEM_DETECTION_CLASSES: tuple[str, ...] = ("motion",)


@dataclass(frozen=True, slots=True)
class ClipResources:
    video_url: str
    thumbnail_url: str


@dataclass(frozen=True, slots=True)
class VideoClip:
    """A recording exposed to clients, built fresh for every listing."""

    id: str
    start_time: int
    duration: int | None
    detection_classes: tuple[str, ...]
    resources: ClipResources
    event: str = CLIP_EVENT

    @property
    def description(self) -> str:
        return self.event

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "startTime": self.start_time,
            "videoId": self.id,
            "thumbnailId": self.id,
            "detectionClasses": list(self.detection_classes),
            "event": self.event,
            "description": self.description,
            "resources": {
                "thumbnail": {"href": self.resources.thumbnail_url},
                "video": {"href": self.resources.video_url},
            },
        }
        if self.duration is not None:
            payload["duration"] = self.duration
        return payload


class WebhookUrlBuilder:
    """Build the public webhook URLs under which clips are delivered."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url if base_url.endswith("/") else f"{base_url}/"

    @property
    def base_url(self) -> str:
        return self._base_url

    def __call__(self, device_id: str, clip_id: str) -> ClipResources:
        encoded_device = quote(device_id, safe="")
        encoded_clip = quote(clip_id, safe="/")
        return ClipResources(
            video_url=f"{self._base_url}videoclip/{encoded_device}/{encoded_clip}",
            thumbnail_url=f"{self._base_url}thumbnail/{encoded_device}/{encoded_clip}",
        )


class ClipCatalog:
    """Merge the configured clip source of a device into :class:`VideoClip` lists."""

    def __init__(self, url_builder: WebhookUrlBuilder, *, tz: tzinfo | None = None) -> None:
        self._url_builder = url_builder
        self._tz = tz

    @property
    def url_builder(self) -> WebhookUrlBuilder:
        return self._url_builder

    async def list_clips(
        self,
        config: DeviceConfig,
        start: int,
        end: int,
        *,
        remote: ReolinkClient | None = None,
        scanner: DirectoryScanner | None = None,
    ) -> list[VideoClip]:
        if not config.enabled:
            return []
        windows = split_date_range_by_day(start, end, tz=self._tz)
        if not windows:
            return []
        try:
            if config.source is ClipSource.REMOTE:
                if remote is None:
                    config.require_remote()
                    raise ConfigError(f"Device {config.device_id} has no remote client")
                hits = await remote.search(windows)
                return self._normalise_hits(config.device_id, hits)
            if scanner is None:
                config.require_root()
                raise ConfigError(f"Device {config.device_id} has no directory scanner")
            # The snapshot filter is a pure predicate, so one pass covers every window.
            entries = scanner.list(windows)
            return self._normalise_entries(config.device_id, scanner, entries)
        except ConfigError as exc:
            logger.warning("Clip listing unavailable: %s", exc)
            return []
        except SessionError as exc:
            logger.error("Clip listing for %s failed: %s", config.device_id, exc)
            return []

    def _normalise_hits(self, device_id: str, hits: list[SearchHit]) -> list[VideoClip]:
        clips: list[VideoClip] = []
        for hit in hits:
            try:
                start_time = hit.start.to_timestamp_ms(self._tz)
                end_time = hit.end.to_timestamp_ms(self._tz)
            except (ValueError, OverflowError) as exc:
                logger.warning("Skipping clip %s with invalid times: %s", hit.name, exc)
                continue
            try:
                detection_classes = decode_filename(hit.name).detection_classes
            except ValueError as exc:
                logger.info("No metadata decoded from %s: %s", hit.name, exc)
                detection_classes = ()
            clips.append(
                VideoClip(
                    id=hit.name,
                    start_time=start_time,
                    duration=round(end_time - start_time),
                    detection_classes=detection_classes,
                    resources=self._url_builder(device_id, hit.name),
                )
            )
        return clips

    def _normalise_entries(
        self, device_id: str, scanner: DirectoryScanner, entries: list[ScanEntry]
    ) -> list[VideoClip]:
        clips: list[VideoClip] = []
        for entry in entries:
            try:
                locator = scanner.locator_for(entry)
            except ValueError as exc:
                logger.warning("Skipping %s: %s", entry.path, exc)
                continue
            clips.append(
                VideoClip(
                    id=locator,
                    start_time=entry.timestamp,
                    duration=None,
                    detection_classes=FILESYSTEM_DETECTION_CLASSES,
                    resources=self._url_builder(device_id, locator),
                )
            )
        return clips


__all__ = [
    "ClipCatalog",
    "ClipResources",
    "VideoClip",
    "WebhookUrlBuilder",
]
