"""Index recordings exported to a local directory tree."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from .date_ranges import ClipSearchWindow, to_timestamp_ms
from .errors import SourceError
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = frozenset({".mp4", ".mkv", ".mov", ".avi"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png"})

# YYYY MM DD hh mm ss, optionally separated by a single -, _, . or T.
_TIMESTAMP_PATTERN = re.compile(
    r"(?<!\d)(\d{4})[-_.]?(\d{2})[-_.]?(\d{2})[-_.T]?(\d{2})[-_.]?(\d{2})[-_.]?(\d{2})(?!\d)"
)


class MediaKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"


@dataclass(frozen=True, slots=True)
class ScanEntry:
    """A recording file discovered by a scan."""

    path: Path
    timestamp: int
    kind: MediaKind
    size_bytes: int


@dataclass(frozen=True, slots=True)
class ScanSnapshot:
    """Complete result of one scan pass."""

    entries: tuple[ScanEntry, ...] = ()
    completed_at: float | None = None
    skipped: int = 0
    errors: tuple[str, ...] = field(default=(), compare=False)

    def __len__(self) -> int:
        return len(self.entries)


def classify_extension(name: str) -> MediaKind | None:
    suffix = os.path.splitext(name)[1].lower()
    if suffix in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    if suffix in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    return None


def parse_filename_timestamp(
    name: str, *, prefix: str | None = None, tz: tzinfo | None = None
) -> int:
    """Return the epoch milliseconds embedded in ``name``.

    Raises :class:`ValueError` when no valid date and time can be found.
    """

    stem = os.path.splitext(name)[0]
    if prefix:
        stem = stem.removeprefix(prefix)
    match = _TIMESTAMP_PATTERN.search(stem)
    if match is None:
        raise ValueError(f"No timestamp found in {name!r}")
    year, month, day, hour, minute, second = (int(group) for group in match.groups())
    moment = datetime(year, month, day, hour, minute, second, tzinfo=tz)
    return to_timestamp_ms(moment)


class DirectoryScanner:
    """Periodically scan ``root`` and publish immutable snapshots."""

    def __init__(
        self,
        root: Path | str,
        *,
        prefix: str | None = None,
        interval: float = 60.0,
        tz: tzinfo | None = None,
        on_snapshot: Callable[[ScanSnapshot], None] | None = None,
    ) -> None:
        self._root = Path(root)
        self._prefix = prefix or None
        self._tz = tz
        self._on_snapshot = on_snapshot
        self._snapshot = ScanSnapshot()
        self._task = PeriodicTask(
            f"scan-{self._root}",
            self.refresh,
            interval=interval,
            logger=logger,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def snapshot(self) -> ScanSnapshot:
        return self._snapshot

    def start(self) -> None:
        self._task.start()

    async def aclose(self) -> None:
        await self._task.aclose()

    async def refresh(self) -> ScanSnapshot:
        """Scan in a worker thread and publish the completed snapshot."""

        snapshot = await asyncio.to_thread(self.scan)
        self._snapshot = snapshot
        logger.debug(
            "Scanned %s: %d entries, %d skipped", self._root, len(snapshot), snapshot.skipped
        )
        if self._on_snapshot is not None:
            self._on_snapshot(snapshot)
        return snapshot

    async def refresh_once(self) -> bool:
        """Refresh unless a scan is already running."""

        return await self._task.run_once()

    def scan(self) -> ScanSnapshot:
        """Walk the tree and build a snapshot without publishing it."""

        try:
            if not self._root.is_dir():
                raise SourceError(f"Recordings directory {self._root} does not exist")
            files = list(self._walk())
        except (OSError, SourceError) as exc:
            logger.warning("Scan of %s failed: %s", self._root, exc)
            return ScanSnapshot(completed_at=time.time(), errors=(str(exc),))

        entries: list[ScanEntry] = []
        skipped = 0
        errors: list[str] = []
        for path in files:
            name = path.name
            if self._prefix and not name.startswith(self._prefix):
                continue
            kind = classify_extension(name)
            if kind is None:
                continue
            try:
                timestamp = parse_filename_timestamp(name, prefix=self._prefix, tz=self._tz)
                size_bytes = path.stat().st_size
            except (OSError, ValueError) as exc:
                skipped += 1
                errors.append(f"{path}: {exc}")
                logger.warning("Skipping %s: %s", path, exc)
                continue
            entries.append(ScanEntry(path=path, timestamp=timestamp, kind=kind, size_bytes=size_bytes))
        entries.sort(key=lambda entry: (entry.timestamp, str(entry.path)))
        return ScanSnapshot(
            entries=tuple(entries),
            completed_at=time.time(),
            skipped=skipped,
            errors=tuple(errors),
        )

    def list(self, windows: Iterable[ClipSearchWindow]) -> list[ScanEntry]:
        """Return the video entries of the published snapshot inside ``windows``."""

        window_list = tuple(windows)
        snapshot = self._snapshot
        return [
            entry
            for entry in snapshot.entries
            if entry.kind is MediaKind.VIDEO
            and any(window.contains(entry.timestamp) for window in window_list)
        ]

    def locator_for(self, entry: ScanEntry) -> str:
        return entry.path.relative_to(self._root).as_posix()

    def resolve(self, locator: str) -> Path:
        """Map a clip locator back to a file inside the root directory."""

        root = self._root.resolve()
        candidate = (root / locator.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            raise SourceError(f"Clip {locator!r} is outside {self._root}")
        if not candidate.is_file():
            raise SourceError(f"Clip {locator!r} not found in {self._root}")
        return candidate

    def _walk(self) -> Iterable[Path]:
        def _on_error(exc: OSError) -> None:
            if exc.filename is None or Path(exc.filename) == self._root:
                raise exc
            logger.warning("Unable to read %s: %s", exc.filename, exc)

        for directory, _dirnames, filenames in os.walk(self._root, onerror=_on_error):
            for filename in filenames:
                yield Path(directory) / filename


__all__ = [
    "DirectoryScanner",
    "IMAGE_EXTENSIONS",
    "MediaKind",
    "ScanEntry",
    "ScanSnapshot",
    "VIDEO_EXTENSIONS",
    "classify_extension",
    "parse_filename_timestamp",
]
