"""Persistent log of device, session and scan events."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SystemLogEntry:
    """One operational event, e.g. a device attaching or a scan completing."""

    timestamp: float
    category: str
    event: str
    message: str
    device_id: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.device_id is not None:
            payload["device_id"] = self.device_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "SystemLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        category = payload.get("category")
        device_id = payload.get("device_id")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category.strip() if isinstance(category, str) and category.strip() else "general",
            event=event,
            message=message,
            device_id=device_id if isinstance(device_id, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """Bounded history of operational events, optionally mirrored to disk.

    The backing file only grows by appends until it holds ``compact_factor``
    times ``max_entries`` lines; it is then rewritten with the entries still
    held in memory.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        compact_factor: int = 4,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if compact_factor < 1:
            raise ValueError("compact_factor must be at least 1")
        self._path = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._compact_after = max_entries * compact_factor
        self._lines_on_disk = 0
        self._lock = threading.Lock()
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        device_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SystemLogEntry:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            device_id=device_id,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        device_id: str | None = None,
        since: float | None = None,
    ) -> list[SystemLogEntry]:
        """Return the newest matching entries, oldest first.

        ``since`` keeps only entries recorded strictly after that timestamp.
        """

        with self._lock:
            snapshot = list(self._entries)
        wanted = category.strip() if category else None
        selected = [
            entry
            for entry in snapshot
            if (wanted is None or entry.category == wanted)
            and (not device_id or entry.device_id == device_id)
            and (since is None or entry.timestamp > since)
        ]
        if limit is not None:
            selected = selected[-max(1, int(limit)):]
        return selected

    def _load(self) -> None:
        path = self._path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                return
            with path.open(encoding="utf-8") as handle:
                lines = [line for line in handle if line.strip()]
        except OSError as exc:
            logger.warning("System log %s unavailable, keeping events in memory: %s", path, exc)
            self._path = None
            return
        self._lines_on_disk = len(lines)
        # Older lines would fall out of the deque anyway.
        for line in lines[-self._entries.maxlen:]:
            entry = _parse_line(line)
            if entry is not None:
                self._entries.append(entry)

    def _persist(self, entry: SystemLogEntry) -> None:
        path = self._path
        if path is None:
            return
        try:
            if self._lines_on_disk >= self._compact_after:
                self._rewrite(path)
                return
            with path.open("a", encoding="utf-8") as handle:
                handle.write(_serialise(entry))
            self._lines_on_disk += 1
        except OSError as exc:
            logger.warning("Unable to write system log %s: %s", path, exc)

    def _rewrite(self, path: Path) -> None:
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                handle.writelines(_serialise(entry) for entry in self._entries)
            os.replace(temp_path, path)
        finally:
            temp_path.unlink(missing_ok=True)
        self._lines_on_disk = len(self._entries)
        logger.debug("Compacted system log %s to %d entries", path, self._lines_on_disk)


def _serialise(entry: SystemLogEntry) -> str:
    return json.dumps(entry.to_dict(), separators=(",", ":")) + "\n"


def _parse_line(line: str) -> SystemLogEntry | None:
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    return SystemLogEntry.from_dict(payload)


__all__ = ["SystemLog", "SystemLogEntry"]
