"""Stream recordings to HTTP clients from disk or from the device."""
from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import AsyncIterator, Mapping

import httpx
from fastapi.responses import Response, StreamingResponse

from .errors import DeliveryError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
VIDEO_MEDIA_TYPE = "video/mp4"

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)

# Headers describing a single connection, never forwarded by a proxy.
_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "host",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


class RangeNotSatisfiable(ValueError):
    """Raised when a byte range lies outside the requested file."""


def parse_range_header(value: str, size: int) -> tuple[int, int]:
    """Return the inclusive ``(start, end)`` span selected by ``value``.

    Supports ``bytes=<start>-<end>``, ``bytes=<start>-`` and the suffix form
    ``bytes=-<length>``; the end is clamped to the last byte of the file.
    """

    match = _RANGE_PATTERN.match(value or "")
    if match is None:
        raise RangeNotSatisfiable(f"Unsupported range {value!r}")
    start_text, end_text = match.groups()
    if not start_text and not end_text:
        raise RangeNotSatisfiable(f"Unsupported range {value!r}")
    if not start_text:
        length = int(end_text)
        if length == 0:
            raise RangeNotSatisfiable("Empty suffix range")
        start = max(0, size - length)
        end = size - 1
    else:
        start = int(start_text)
        end = int(end_text) if end_text else size - 1
        end = min(end, size - 1)
    if start >= size or start > end:
        raise RangeNotSatisfiable(f"Range {value!r} outside {size} bytes")
    return start, end


async def iter_file_range(path: Path, start: int, end: int) -> AsyncIterator[bytes]:
    """Yield bytes ``start..end`` of ``path``; the handle closes when iteration stops."""

    handle = await asyncio.to_thread(path.open, "rb")
    try:
        await asyncio.to_thread(handle.seek, start)
        remaining = end - start + 1
        while remaining > 0:
            data = await asyncio.to_thread(handle.read, min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data
    except OSError as exc:
        logger.warning("Streaming %s stopped: %s", path, exc)
    finally:
        handle.close()


def stream_local_file(
    path: Path, range_header: str | None, *, media_type: str = VIDEO_MEDIA_TYPE
) -> Response:
    """Serve ``path`` in full (200) or the requested byte span (206)."""

    try:
        size = path.stat().st_size
    except OSError as exc:
        raise DeliveryError(f"Unable to open {path.name}: {exc}") from exc

    if range_header:
        try:
            start, end = parse_range_header(range_header, size)
        except RangeNotSatisfiable as exc:
            logger.info("Rejecting range for %s: %s", path.name, exc)
            return Response(
                status_code=416,
                headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
            )
        headers = {
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        }
        return StreamingResponse(
            iter_file_range(path, start, end),
            status_code=206,
            headers=headers,
            media_type=media_type,
        )

    headers = {"Accept-Ranges": "bytes", "Content-Length": str(size)}
    return StreamingResponse(
        iter_file_range(path, 0, size - 1),
        status_code=200,
        headers=headers,
        media_type=media_type,
    )


def forwardable_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in _HOP_BY_HOP_HEADERS and key.lower() != "content-length"
    }


async def proxy_remote_stream(
    client: httpx.AsyncClient, url: str, headers: Mapping[str, str]
) -> StreamingResponse:
    """Relay the response of ``url`` to the client, forwarding ``headers``.

    An upstream error status raises :class:`DeliveryError` before any byte is
    sent.
    """

    request_headers = forwardable_headers(headers)
    request_headers.pop("accept-encoding", None)
    request = client.build_request("GET", url, headers=request_headers)
    try:
        upstream = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        raise DeliveryError(f"Error fetching videoclip: {exc}") from exc

    if upstream.status_code >= 400:
        reason = upstream.reason_phrase
        await upstream.aclose()
        raise DeliveryError(
            f"Error loading the video: {upstream.status_code} - {reason}"
        )

    async def _relay() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning("Upstream stream from %s interrupted: %s", request.url.host, exc)
        finally:
            await upstream.aclose()

    response_headers = {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() not in _HOP_BY_HOP_HEADERS
    }
    return StreamingResponse(
        _relay(),
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=upstream.headers.get("content-type", VIDEO_MEDIA_TYPE),
    )


__all__ = [
    "CHUNK_SIZE",
    "RangeNotSatisfiable",
    "VIDEO_MEDIA_TYPE",
    "forwardable_headers",
    "iter_file_range",
    "parse_range_header",
    "proxy_remote_stream",
    "stream_local_file",
]
