"""On-disk JPEG thumbnail cache for recordings."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import av
import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)

THUMBNAIL_OFFSET_S = 5.0
DEFAULT_JPEG_QUALITY = 80

ThumbnailSource = str | Callable[[], Awaitable[str]]


class FrameExtractor(Protocol):
    """Produce JPEG bytes for the frame ``offset_s`` seconds into ``source``."""

    async def extract_jpeg(self, source: str, offset_s: float) -> bytes:
        ...


def encode_frame_to_jpeg(frame: np.ndarray, *, quality: int) -> bytes:
    """Encode an RGB frame into JPEG bytes using the configured quality."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim != 3:
        raise ValueError("Expected a 2D or 3D frame")
    elif array.shape[2] > 3:
        array = array[:, :, :3]
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)
    return simplejpeg.encode_jpeg(array, quality=int(quality), colorspace="RGB")


class AvFrameExtractor:
    """Decode a still frame with PyAV.

    Recordings shorter than the requested offset yield their last frame.
    """

    def __init__(self, *, quality: int = DEFAULT_JPEG_QUALITY, timeout: float = 15.0) -> None:
        if not 1 <= quality <= 100:
            raise ValueError("JPEG quality must be between 1 and 100")
        self._quality = quality
        self._timeout = timeout

    async def extract_jpeg(self, source: str, offset_s: float) -> bytes:
        return await asyncio.to_thread(self._extract, source, offset_s)

    def _extract(self, source: str, offset_s: float) -> bytes:
        with av.open(source, timeout=self._timeout) as container:
            if not container.streams.video:
                return b""
            stream = container.streams.video[0]
            duration = (
                float(stream.duration * stream.time_base)
                if stream.duration and stream.time_base
                else None
            )
            # Clips shorter than the offset are decoded from the start.
            if offset_s > 0 and stream.time_base and (duration is None or duration > offset_s):
                try:
                    container.seek(int(offset_s / stream.time_base), stream=stream)
                except av.error.FFmpegError as exc:
                    logger.debug("Seek in %s failed, decoding from start: %s", source, exc)
            last_frame = None
            for frame in container.decode(stream):
                last_frame = frame
                if frame.time is not None and frame.time >= offset_s:
                    break
            if last_frame is None:
                return b""
            return encode_frame_to_jpeg(last_frame.to_ndarray(format="rgb24"), quality=self._quality)


class ThumbnailCache:
    """Cache ``<root>/<device>/<clip-stem>.jpg`` files generated on demand."""

    def __init__(
        self,
        root: Path | str,
        extractor: FrameExtractor,
        *,
        offset_s: float = THUMBNAIL_OFFSET_S,
    ) -> None:
        self._root = Path(root)
        self._extractor = extractor
        self._offset_s = float(offset_s)

    @property
    def root(self) -> Path:
        return self._root

    def device_folder(self, device_id: str) -> Path:
        folder = self._confined(device_id)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def path_for(self, device_id: str, clip_locator: str) -> Path:
        name = clip_locator.replace("\\", "/").rsplit("/", 1)[-1]
        stem = name.split(".", 1)[0]
        if not stem:
            raise ValueError(f"Clip locator {clip_locator!r} has no file name")
        return self.device_folder(device_id) / f"{stem}.jpg"

    async def get(
        self,
        device_id: str,
        clip_locator: str,
        source: ThumbnailSource | None = None,
        *,
        generate: bool = True,
    ) -> Path | None:
        """Return the cached thumbnail path, generating it when allowed.

        Never raises; failures are logged and reported as ``None``.
        """

        path: Path | None = None
        try:
            path = self.path_for(device_id, clip_locator)
            if path.exists() and path.stat().st_size == 0:
                logger.info("Thumbnail %s corrupted, removing", path)
                path.unlink(missing_ok=True)
            if not path.exists():
                if not generate or source is None:
                    return None
                await self._generate(path, source)
            return path if path.exists() else None
        except Exception:
            logger.exception("Error retrieving thumbnail of %s for %s", clip_locator, device_id)
            if path is not None:
                _remove_if_empty(path)
            return None

    def clear(self, device_id: str | None = None) -> None:
        target = self._root if device_id is None else self._confined(device_id)
        if target.exists():
            shutil.rmtree(target)
            logger.info("Cleared thumbnail cache %s", target)

    def _confined(self, device_id: str) -> Path:
        """Return the cache folder of ``device_id``, a direct child of the root."""

        root = self._root.resolve()
        folder = self._root / device_id
        if not device_id or folder.resolve().parent != root:
            raise ValueError(f"Device id {device_id!r} escapes the thumbnail cache")
        return folder

    async def _generate(self, path: Path, source: ThumbnailSource) -> None:
        url = source if isinstance(source, str) else await source()
        logger.info("Thumbnail not found in %s, generating", path)
        jpeg = await self._extractor.extract_jpeg(url, self._offset_s)
        if not jpeg:
            logger.warning("Not saving %s, extracted image is empty", path)
            _remove_if_empty(path)
            return
        temp_path = path.with_name(f".{path.stem}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            await asyncio.to_thread(temp_path.write_bytes, jpeg)
            os.replace(temp_path, path)
        finally:
            temp_path.unlink(missing_ok=True)
        logger.info("Saved thumbnail %s", path)


def _remove_if_empty(path: Path) -> None:
    try:
        if path.exists() and path.stat().st_size == 0:
            path.unlink()
    except OSError as exc:
        logger.warning("Unable to remove %s: %s", path, exc)


__all__ = [
    "AvFrameExtractor",
    "FrameExtractor",
    "THUMBNAIL_OFFSET_S",
    "ThumbnailCache",
    "encode_frame_to_jpeg",
]
