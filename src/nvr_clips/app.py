"""FastAPI application serving clip listings, thumbnails and video streams."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Awaitable, Callable, Literal

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import BaseModel, Field

from .catalog import ClipCatalog, WebhookUrlBuilder
from .config import DEFAULT_CONFIG_PATH, ConfigManager
from .delivery import proxy_remote_stream, stream_local_file
from .errors import ConfigError, DeliveryError, SessionError, SourceError
from .registry import DeviceHandler, DeviceRegistry, LocalTarget
from .system_log import SystemLog
from .thumbnails import AvFrameExtractor, FrameExtractor, ThumbnailCache
from .version import APP_VERSION

WebhookHandler = Callable[[DeviceHandler, str, Request], Awaitable[Response]]

_CLIP_ERRORS = (ConfigError, DeliveryError, SessionError, SourceError)


class DevicePayload(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    source: Literal["remote", "filesystem"] | None = None
    host: str | None = Field(default=None, max_length=255)
    username: str | None = None
    password: str | None = None
    channel: int | None = Field(default=None, ge=0)
    use_https: bool | None = None
    stream_type: Literal["main", "sub"] | None = None
    root: str | None = None
    prefix: str | None = None
    enabled: bool | None = None
    redirect_playback: bool | None = None
    scan_interval_s: float | None = Field(default=None, gt=0.0)
    session_refresh_s: float | None = Field(default=None, gt=0.0)
    thumbnail_prefetch_s: float | None = Field(default=None, gt=0.0)
    battery_poll_s: float | None = Field(default=None, gt=0.0)


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    registry: DeviceRegistry | None = None,
    extractor: FrameExtractor | None = None,
    http_client: httpx.AsyncClient | None = None,
    system_log: SystemLog | None = None,
) -> FastAPI:
    app = FastAPI(title="NVR Clips", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    settings = config_manager.get_service_settings()
    shared_system_log = system_log or SystemLog(Path(settings.data_dir) / "system_log.jsonl")

    if registry is None:
        thumbnails = ThumbnailCache(settings.thumbnails_dir, extractor or AvFrameExtractor())
        catalog = ClipCatalog(WebhookUrlBuilder(settings.public_url))
        registry = DeviceRegistry(
            catalog,
            thumbnails,
            system_log=shared_system_log,
            http_client=http_client,
            request_timeout=settings.request_timeout_s,
        )
    devices = registry

    proxy_client: httpx.AsyncClient | None = http_client
    owns_proxy_client = http_client is None

    def _get_proxy_client() -> httpx.AsyncClient:
        nonlocal proxy_client
        if proxy_client is None:
            proxy_client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.request_timeout_s, read=None), verify=False
            )
        return proxy_client

    app.state.config_manager = config_manager
    app.state.registry = devices
    app.state.system_log = shared_system_log

    @app.on_event("startup")
    async def startup() -> None:
        shared_system_log.record("system", "startup", "NVR Clips starting up.")
        for config in config_manager.get_devices():
            try:
                await devices.create(config)
            except Exception:
                logger.exception("Failed to attach device %s", config.device_id)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        nonlocal proxy_client
        await devices.aclose()
        if owns_proxy_client and proxy_client is not None:
            await proxy_client.aclose()
            proxy_client = None
        shared_system_log.record("system", "shutdown", "NVR Clips shut down.")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    async def _videoclip(device: DeviceHandler, clip_id: str, request: Request) -> Response:
        target = await device.resolve_delivery(clip_id)
        if isinstance(target, LocalTarget):
            return stream_local_file(target.path, request.headers.get("range"))
        if device.config.redirect_playback:
            return RedirectResponse(target.url, status_code=302)
        return await proxy_remote_stream(_get_proxy_client(), target.url, request.headers)

    async def _thumbnail(device: DeviceHandler, clip_id: str, request: Request) -> Response:
        path = await device.get_thumbnail(clip_id)
        if path is None:
            raise DeliveryError(f"Thumbnail for {clip_id} is unavailable")
        return FileResponse(path, media_type="image/jpeg")

    webhooks: dict[str, WebhookHandler] = {
        "videoclip": _videoclip,
        "thumbnail": _thumbnail,
    }

    async def _dispatch(webhook: str, envelope: str, request: Request) -> Response:
        handle = webhooks.get(webhook)
        if handle is None:
            raise HTTPException(status_code=404, detail=f"Webhook not found: {webhook}")
        device_id, _, clip_id = envelope.partition("/")
        if not device_id or not clip_id:
            raise HTTPException(
                status_code=500,
                detail=f"Malformed {webhook} request: expected /webhook/{webhook}/<device>/<clip>",
            )
        try:
            device = devices.get(device_id)
        except KeyError:
            raise HTTPException(
                status_code=400, detail=f"Device not found: {device_id}"
            ) from None
        try:
            return await handle(device, clip_id, request)
        except _CLIP_ERRORS as exc:
            logger.warning("%s webhook for %s/%s failed: %s", webhook, device_id, clip_id, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Unexpected error in %s webhook for %s", webhook, device_id)
            raise HTTPException(
                status_code=400, detail=f"Error in {webhook} webhook: {exc}"
            ) from exc

    @app.get("/webhook/{webhook}")
    async def webhook_without_envelope(webhook: str, request: Request) -> Response:
        return await _dispatch(webhook, "", request)

    @app.get("/webhook/{webhook}/{envelope:path}")
    async def webhook(webhook: str, envelope: str, request: Request) -> Response:
        return await _dispatch(webhook, envelope, request)

    # ------------------------------------------------------------------
    # Management API
    # ------------------------------------------------------------------
    def _require_device(device_id: str) -> DeviceHandler:
        try:
            return devices.get(device_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Device not found: {device_id}") from None

    @app.get("/api/devices")
    async def list_devices() -> dict[str, object]:
        return {"devices": [handler.to_dict() for handler in devices.handlers()]}

    @app.put("/api/devices/{device_id}")
    async def update_device(device_id: str, payload: DevicePayload) -> dict[str, object]:
        data = {"device_id": device_id, **payload.model_dump(exclude_unset=True)}
        try:
            config = await run_in_threadpool(config_manager.set_device, data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        handler = await devices.create(config)
        return handler.to_dict()

    @app.delete("/api/devices/{device_id}")
    async def delete_device(device_id: str) -> dict[str, object]:
        removed = await run_in_threadpool(config_manager.remove_device, device_id)
        detached = await devices.destroy(device_id)
        if not removed and not detached:
            raise HTTPException(status_code=404, detail=f"Device not found: {device_id}")
        return {"device_id": device_id, "removed": True}

    @app.get("/api/devices/{device_id}/clips")
    async def list_device_clips(device_id: str, start: int, end: int) -> dict[str, object]:
        handler = _require_device(device_id)
        clips = await handler.list_clips(start, end)
        return {"clips": [clip.to_dict() for clip in clips]}

    @app.post("/api/devices/{device_id}/thumbnails")
    async def prefetch_device_thumbnails(device_id: str) -> dict[str, object]:
        handler = _require_device(device_id)
        started = await handler.prefetch_thumbnails()
        return {"device_id": device_id, "started": started}

    @app.delete("/api/thumbnails")
    async def clear_thumbnails(device_id: str | None = None) -> dict[str, object]:
        if device_id is not None:
            _require_device(device_id)
        try:
            await run_in_threadpool(devices.thumbnails.clear, device_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except OSError as exc:
            logger.error("Unable to clear thumbnail cache: %s", exc)
            raise HTTPException(status_code=500, detail="Unable to clear thumbnail cache") from exc
        shared_system_log.record(
            "thumbnails",
            "cleared",
            "Thumbnail cache cleared.",
            device_id=device_id,
        )
        return {"cleared": True, "device_id": device_id}

    @app.get("/api/logs")
    async def get_system_log_entries(
        limit: int = 100,
        category: str | None = None,
        device_id: str | None = None,
        since: float | None = None,
    ) -> dict[str, object]:
        entries = await run_in_threadpool(
            shared_system_log.tail, limit, category=category, device_id=device_id, since=since
        )
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    return app


__all__ = ["DevicePayload", "create_app"]
