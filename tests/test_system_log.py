"""Tests for the persistent event log."""

from __future__ import annotations

import itertools
import json
from pathlib import Path

import pytest

from nvr_clips.system_log import SystemLog


def test_entries_persist_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "system_log.jsonl"
    log = SystemLog(path)
    log.record("device", "attached", "Device front attached.", device_id="front", metadata={"source": "remote"})
    log.record("scan", "completed", "Indexed 3 recordings.", device_id="garage", metadata={"skipped": None})

    reloaded = SystemLog(path)
    entries = reloaded.tail()

    assert [entry.event for entry in entries] == ["attached", "completed"]
    assert entries[0].metadata == {"source": "remote"}
    assert entries[1].metadata is None
    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["device_id"] == "front"


def test_tail_filters_and_limits(tmp_path: Path) -> None:
    log = SystemLog(tmp_path / "log.jsonl", max_entries=3)
    for index in range(5):
        log.record("scan" if index % 2 else "device", f"event-{index}", "msg", device_id="front")

    assert [entry.event for entry in log.tail()] == ["event-2", "event-3", "event-4"]
    assert [entry.event for entry in log.tail(1)] == ["event-4"]
    assert [entry.event for entry in log.tail(category="scan")] == ["event-3"]
    assert log.tail(device_id="other") == []


def test_corrupt_lines_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    path.write_text('not json\n{"event": "ok", "message": "fine"}\n[1, 2]\n', encoding="utf-8")

    entries = SystemLog(path).tail()

    assert [entry.event for entry in entries] == ["ok"]
    assert entries[0].category == "general"


def test_in_memory_log_and_validation() -> None:
    log = SystemLog()
    log.record("session", "login", "Session renewed.")

    assert log.path is None
    assert len(log.tail()) == 1
    with pytest.raises(ValueError):
        SystemLog(max_entries=0)


def test_tail_since_timestamp(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = itertools.count(100.0, 100.0)
    monkeypatch.setattr("nvr_clips.system_log.time.time", lambda: next(clock))
    log = SystemLog()
    for event in ("first", "second", "third"):
        log.record("device", event, "msg")

    assert [entry.event for entry in log.tail(since=200.0)] == ["third"]
    assert [entry.event for entry in log.tail(since=50.0)] == ["first", "second", "third"]


def test_file_is_compacted_to_retained_entries(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    log = SystemLog(path, max_entries=2, compact_factor=2)
    for index in range(5):
        log.record("scan", f"event-{index}", "msg")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["event-3", "event-4"]
    assert [entry.event for entry in SystemLog(path, max_entries=2).tail()] == ["event-3", "event-4"]
    assert not list(tmp_path.glob(".*.tmp"))
