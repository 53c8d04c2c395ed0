"""Decode the metadata packed into Reolink recording file names.

Recording names carry a hex "flags" word whose bits describe how and why the
clip was recorded.  The bit order inside that word is reversed twice: the
whole word is mirrored to obtain the addressable bit space, and every field
extracted from it is mirrored again to recover its natural value.  Field
offsets differ between device families and firmware versions, so each table
below is spelled out literally.

Examples of the two supported layouts::

    RecM02_20230615_143000_143512_6D28808_1A468F.mp4            (cam, 6 fields)
    RecS03_DST20230615_143000_143512_0_55_82_6D28808_1A468F.mp4 (hub, 9 fields)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

FlagTable = Mapping[str, tuple[int, int]]

CAM_FAMILY = "cam"
HUB_FAMILY = "hub"

_HEX_FIELD = re.compile(r"[0-9A-Fa-f]+")


class DecodeError(ValueError):
    """Raised when a recording name cannot be decoded."""


FLAGS_CAM_V2: FlagTable = {
    "resolution_index": (0, 7),
    "tv_system": (7, 1),
    "framerate": (8, 7),
    "audio_index": (15, 2),
    "ai_pd": (17, 1),
    "ai_fd": (18, 1),
    "ai_vd": (19, 1),
    "ai_ad": (20, 1),
    "encoder_type_index": (21, 2),
    "is_schedule_record": (23, 1),
    "is_motion_record": (24, 1),
    "is_rf_record": (25, 1),
    "is_doorbell_record": (26, 1),
    "ai_other": (27, 1),
}

FLAGS_HUB_V0: FlagTable = {
    "resolution_index": (0, 7),
    "tv_system": (7, 1),
    "framerate": (8, 7),
    "audio_index": (15, 2),
    "ai_pd": (17, 1),
    "ai_fd": (18, 1),
    "ai_vd": (19, 1),
    "ai_ad": (20, 1),
    "encoder_type_index": (21, 2),
    "is_schedule_record": (23, 1),
    "is_motion_record": (24, 1),
    "is_rf_record": (25, 1),
    "is_doorbell_record": (26, 1),
    "is_ai_other_record": (27, 1),
    "picture_layout_index": (28, 7),
    "package_delivered": (35, 1),
    "package_takenaway": (36, 1),
}

FLAGS_HUB_V1: FlagTable = {
    "resolution_index": (0, 7),
    "tv_system": (7, 1),
    "framerate": (8, 7),
    "audio_index": (15, 2),
    "ai_pd": (17, 1),
    "ai_fd": (18, 1),
    "ai_vd": (19, 1),
    "ai_ad": (20, 1),
    "encoder_type_index": (21, 2),
    "is_schedule_record": (23, 1),
    "is_motion_record": (24, 1),
    "is_rf_record": (25, 1),
    "is_doorbell_record": (26, 1),
    "is_ai_other_record": (27, 1),
    "picture_layout_index": (28, 7),
    "package_delivered": (35, 1),
    "package_takenaway": (36, 1),
    "package_event": (37, 1),
}

# Version 2 hubs moved ai_other in front of the encoder type, so the offsets
# after bit 20 do not line up with v0/v1.
FLAGS_HUB_V2: FlagTable = {
    "resolution_index": (0, 7),
    "tv_system": (7, 1),
    "framerate": (8, 7),
    "audio_index": (15, 2),
    "ai_pd": (17, 1),
    "ai_fd": (18, 1),
    "ai_vd": (19, 1),
    "ai_ad": (20, 1),
    "ai_other": (21, 2),
    "encoder_type_index": (23, 1),
    "is_schedule_record": (24, 1),
    "is_motion_record": (25, 1),
    "is_rf_record": (26, 1),
    "is_doorbell_record": (27, 1),
    "picture_layout_index": (28, 7),
    "package_delivered": (35, 1),
    "package_takenaway": (36, 1),
    "package_event": (37, 1),
    "upload_flag": (38, 1),
}

FLAG_TABLES: Mapping[tuple[str, int], FlagTable] = {
    (CAM_FAMILY, 2): FLAGS_CAM_V2,
    (CAM_FAMILY, 3): FLAGS_CAM_V2,
    (CAM_FAMILY, 4): FLAGS_CAM_V2,
    (CAM_FAMILY, 9): FLAGS_CAM_V2,
    (HUB_FAMILY, 0): FLAGS_HUB_V0,
    (HUB_FAMILY, 1): FLAGS_HUB_V1,
    (HUB_FAMILY, 2): FLAGS_HUB_V2,
}

# field count -> (family, flags field index, size field index)
_LAYOUTS: Mapping[int, tuple[str, int, int]] = {
    6: (CAM_FAMILY, 4, 5),
    9: (HUB_FAMILY, 7, 8),
}

_DETECTION_FLAGS: tuple[tuple[str, str], ...] = (
    ("ai_pd", "person"),
    ("ai_vd", "vehicle"),
    ("ai_fd", "face"),
    ("ai_ad", "animal"),
)


@dataclass(frozen=True, slots=True)
class DecodedFilename:
    """Attributes recovered from a single recording name."""

    family: str
    version: int
    flags: dict[str, int] = field(default_factory=dict)
    size_bytes: int = 0
    detection_classes: tuple[str, ...] = ()
    start: datetime | None = None
    end: datetime | None = None


def reverse_bits(value: int, width: int) -> int:
    """Return ``value`` with its ``width`` least significant bits mirrored."""

    if width < 0:
        raise ValueError("width must not be negative")
    if value < 0:
        raise ValueError("value must not be negative")
    if width == 0:
        return 0
    if value >> width:
        raise ValueError(f"value {value:#x} does not fit in {width} bits")
    return int(format(value, f"0{width}b")[::-1], 2)


def extract_flags(hex_value: str, table: FlagTable) -> dict[str, int]:
    """Extract every flag in ``table`` from the hex ``hex_value`` word."""

    word = _parse_hex(hex_value, "Flags field")
    word_width = len(hex_value) * 4
    reversed_word = reverse_bits(word, word_width)
    flags: dict[str, int] = {}
    for name, (offset, width) in table.items():
        mask = (1 << width) - 1
        flags[name] = reverse_bits((reversed_word >> offset) & mask, width)
    return flags


def encode_flags(family: str, version: int, flags: Mapping[str, int], hex_digits: int) -> str:
    """Pack ``flags`` into an upper-case hex word of ``hex_digits`` digits."""

    table = _lookup_table(family, version)
    word_width = hex_digits * 4
    reversed_word = 0
    for name, value in flags.items():
        try:
            offset, width = table[name]
        except KeyError:
            raise ValueError(f"Unknown flag {name!r} for {family} v{version}") from None
        if offset + width > word_width:
            raise ValueError(f"Flag {name!r} does not fit in {hex_digits} hex digits")
        reversed_word |= reverse_bits(int(value), width) << offset
    return format(reverse_bits(reversed_word, word_width), f"0{hex_digits}X")


def detection_classes_from_flags(flags: Mapping[str, int]) -> tuple[str, ...]:
    classes = [label for flag, label in _DETECTION_FLAGS if flags.get(flag) == 1]
    if flags.get("is_motion_record") == 1 or flags.get("ai_other") == 1:
        classes.append("motion")
    return tuple(classes)


def decode_filename(path: str) -> DecodedFilename:
    """Decode the recording name at the end of ``path``.

    Raises :class:`DecodeError` when the name does not follow a known layout.
    """

    name = path.replace("\\", "/").rsplit("/", 1)[-1]
    stem = name.split(".", 1)[0]
    parts = stem.split("_")
    layout = _LAYOUTS.get(len(parts))
    if layout is None:
        raise DecodeError(f"Unexpected field count {len(parts)} in {name!r}")
    family, flags_index, size_index = layout

    version_hex = parts[0][4:6]
    version = _parse_hex(version_hex, f"Version in {name!r}")

    table = _lookup_table(family, version)
    flags = extract_flags(parts[flags_index], table)
    size_bytes = _parse_hex(parts[size_index], "Size field")

    start, end = _parse_times(parts[1], parts[2], parts[3])
    return DecodedFilename(
        family=family,
        version=version,
        flags=flags,
        size_bytes=size_bytes,
        detection_classes=detection_classes_from_flags(flags),
        start=start,
        end=end,
    )


def _parse_hex(text: str, label: str) -> int:
    # ASCII hex digits only.
    if not _HEX_FIELD.fullmatch(text):
        raise DecodeError(f"{label} {text!r} is not hexadecimal")
    return int(text, 16)


def _lookup_table(family: str, version: int) -> FlagTable:
    try:
        return FLAG_TABLES[(family, version)]
    except KeyError:
        raise DecodeError(f"No flag table for {family} version {version}") from None


def _parse_times(
    date_field: str, start_field: str, end_field: str
) -> tuple[datetime | None, datetime | None]:
    date_text = date_field.removeprefix("DST")
    try:
        start = datetime.strptime(date_text + start_field, "%Y%m%d%H%M%S")
    except ValueError:
        return None, None
    try:
        end = datetime.strptime(date_text + end_field, "%Y%m%d%H%M%S")
    except ValueError:
        return start, None
    return start, end


__all__ = [
    "CAM_FAMILY",
    "DecodeError",
    "DecodedFilename",
    "FLAG_TABLES",
    "HUB_FAMILY",
    "decode_filename",
    "detection_classes_from_flags",
    "encode_flags",
    "extract_flags",
    "reverse_bits",
]
