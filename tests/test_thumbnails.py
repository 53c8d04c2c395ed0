"""Tests for the thumbnail cache and frame extraction."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")
av = pytest.importorskip("av")
simplejpeg = pytest.importorskip("simplejpeg")

from nvr_clips.thumbnails import AvFrameExtractor, ThumbnailCache, encode_frame_to_jpeg

JPEG = b"\xff\xd8fake-jpeg\xff\xd9"


class FakeExtractor:
    def __init__(self, payload: bytes = JPEG, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[tuple[str, float]] = []

    async def extract_jpeg(self, source: str, offset_s: float) -> bytes:
        self.calls.append((source, offset_s))
        if self.error is not None:
            raise self.error
        return self.payload


def test_thumbnail_is_generated_once_and_cached(tmp_path: Path) -> None:
    extractor = FakeExtractor()
    cache = ThumbnailCache(tmp_path, extractor)
    locator = "/mnt/sda/Mp4Record/2023-06-15/RecM02_20230615_143000_143512_0000400_1A468F.mp4"

    first = asyncio.run(cache.get("front", locator, "http://cam/playback"))
    second = asyncio.run(cache.get("front", locator, "http://cam/playback"))

    assert first == tmp_path / "front" / "RecM02_20230615_143000_143512_0000400_1A468F.jpg"
    assert second == first
    assert first.read_bytes() == JPEG
    assert extractor.calls == [("http://cam/playback", 5.0)]
    assert list((tmp_path / "front").iterdir()) == [first]


def test_source_resolver_is_only_awaited_when_generating(tmp_path: Path) -> None:
    extractor = FakeExtractor()
    cache = ThumbnailCache(tmp_path, extractor)
    resolved: list[str] = []

    async def resolver() -> str:
        resolved.append("called")
        return "/recordings/clip.mp4"

    asyncio.run(cache.get("garage", "day/clip.mp4", resolver))
    asyncio.run(cache.get("garage", "day/clip.mp4", resolver))

    assert resolved == ["called"]
    assert extractor.calls == [("/recordings/clip.mp4", 5.0)]


def test_zero_byte_thumbnail_is_regenerated(tmp_path: Path) -> None:
    extractor = FakeExtractor()
    cache = ThumbnailCache(tmp_path, extractor)
    corrupt = cache.path_for("front", "clip.mp4")
    corrupt.write_bytes(b"")

    path = asyncio.run(cache.get("front", "clip.mp4", "src"))

    assert path == corrupt
    assert path.read_bytes() == JPEG
    assert len(extractor.calls) == 1


def test_failed_generation_leaves_no_artifact(tmp_path: Path) -> None:
    cache = ThumbnailCache(tmp_path, FakeExtractor(error=RuntimeError("decoder crashed")))

    assert asyncio.run(cache.get("front", "clip.mp4", "src")) is None
    assert list((tmp_path / "front").iterdir()) == []


def test_empty_extraction_is_not_saved(tmp_path: Path) -> None:
    cache = ThumbnailCache(tmp_path, FakeExtractor(payload=b""))

    assert asyncio.run(cache.get("front", "clip.mp4", "src")) is None
    assert not cache.path_for("front", "clip.mp4").exists()


def test_lookup_without_generation(tmp_path: Path) -> None:
    extractor = FakeExtractor()
    cache = ThumbnailCache(tmp_path, extractor)

    assert asyncio.run(cache.get("front", "clip.mp4", "src", generate=False)) is None
    assert asyncio.run(cache.get("front", "clip.mp4")) is None
    assert extractor.calls == []


def test_clear_removes_cached_thumbnails(tmp_path: Path) -> None:
    cache = ThumbnailCache(tmp_path / "thumbnails", FakeExtractor())
    asyncio.run(cache.get("front", "a.mp4", "src"))
    asyncio.run(cache.get("back", "b.mp4", "src"))

    cache.clear("front")
    assert not (tmp_path / "thumbnails" / "front").exists()
    assert (tmp_path / "thumbnails" / "back" / "b.jpg").exists()

    cache.clear()
    assert not (tmp_path / "thumbnails").exists()


@pytest.mark.parametrize("device_id", ["..", ".", "", "front/../..", "../data"])
def test_device_ids_cannot_escape_the_cache_root(tmp_path: Path, device_id: str) -> None:
    (tmp_path / "config.json").write_text("{}")
    cache = ThumbnailCache(tmp_path / "thumbnails", FakeExtractor())
    asyncio.run(cache.get("front", "a.mp4", "src"))

    with pytest.raises(ValueError):
        cache.clear(device_id)
    with pytest.raises(ValueError):
        cache.device_folder(device_id)
    assert asyncio.run(cache.get(device_id, "a.mp4", "src")) is None
    assert (tmp_path / "config.json").exists()
    assert (tmp_path / "thumbnails" / "front" / "a.jpg").exists()


def test_locator_without_file_name_is_rejected(tmp_path: Path) -> None:
    cache = ThumbnailCache(tmp_path, FakeExtractor())

    with pytest.raises(ValueError):
        cache.path_for("front", "folder/")
    assert asyncio.run(cache.get("front", "folder/", "src")) is None


def test_encode_frame_to_jpeg_accepts_greyscale_and_rgba() -> None:
    grey = np.zeros((16, 16), dtype=np.uint8)
    rgba = np.zeros((16, 16, 4), dtype=np.uint8)

    for frame in (grey, rgba):
        data = encode_frame_to_jpeg(frame, quality=80)
        assert data.startswith(b"\xff\xd8")
        assert simplejpeg.decode_jpeg(data).shape == (16, 16, 3)


def _write_clip(path: Path, *, frames: int, fps: int = 10) -> None:
    container = av.open(str(path), mode="w")
    stream = container.add_stream("mpeg4", rate=fps)
    stream.width = 64
    stream.height = 48
    stream.pix_fmt = "yuv420p"
    for index in range(frames):
        image = np.full((48, 64, 3), min(255, index * 20), dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(image, format="rgb24")
        for packet in stream.encode(frame):
            container.mux(packet)
    for packet in stream.encode():
        container.mux(packet)
    container.close()


def test_av_extractor_uses_last_frame_of_short_clips(tmp_path: Path) -> None:
    clip = tmp_path / "short.mp4"
    _write_clip(clip, frames=10)

    data = asyncio.run(AvFrameExtractor().extract_jpeg(str(clip), 5.0))

    image = simplejpeg.decode_jpeg(data)
    assert image.shape == (48, 64, 3)
    assert image.mean() > 120
