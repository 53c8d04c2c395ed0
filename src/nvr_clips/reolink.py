"""Authenticated client for the Reolink ``api.cgi`` command protocol."""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import quote, urlencode

import httpx

from .date_ranges import ClipSearchWindow, to_datetime, to_timestamp_ms
from .errors import SessionError, SourceError
from .scheduling import PeriodicTask

logger = logging.getLogger(__name__)

# rspCode values returned when the token is missing, expired or revoked.
_TOKEN_ERROR_CODES = frozenset({-6})


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True, slots=True)
class Session:
    """Token issued by the device and the epoch second it stops being valid."""

    token: str
    lease_expiry: float

    def is_valid(self, now: float) -> bool:
        return self.lease_expiry > now


@dataclass(frozen=True, slots=True)
class SearchTime:
    """Wall clock time as exchanged with the device (no timezone)."""

    year: int
    mon: int
    day: int
    hour: int
    min: int
    sec: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchTime":
        return cls(
            year=int(payload["year"]),
            mon=int(payload["mon"]),
            day=int(payload["day"]),
            hour=int(payload["hour"]),
            min=int(payload["min"]),
            sec=int(payload["sec"]),
        )

    @classmethod
    def from_datetime(cls, moment: datetime) -> "SearchTime":
        return cls(
            year=moment.year,
            mon=moment.month,
            day=moment.day,
            hour=moment.hour,
            min=moment.minute,
            sec=moment.second,
        )

    def to_payload(self) -> dict[str, int]:
        return {
            "year": self.year,
            "mon": self.mon,
            "day": self.day,
            "hour": self.hour,
            "min": self.min,
            "sec": self.sec,
        }

    def to_datetime(self, tz: tzinfo | None = None) -> datetime:
        return datetime(self.year, self.mon, self.day, self.hour, self.min, self.sec, tzinfo=tz)

    def to_timestamp_ms(self, tz: tzinfo | None = None) -> int:
        return to_timestamp_ms(self.to_datetime(tz))


@dataclass(frozen=True, slots=True)
class SearchHit:
    """One recording returned by the ``Search`` command."""

    name: str
    start: SearchTime
    end: SearchTime
    size: int | None = None
    frame_rate: int | None = None
    width: int | None = None
    height: int | None = None
    type: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchHit":
        name = payload["name"]
        if not isinstance(name, str) or not name:
            raise ValueError("Search hit has no file name")

        def _optional_int(key: str) -> int | None:
            value = payload.get(key)
            return int(value) if value is not None else None

        return cls(
            name=name,
            start=SearchTime.from_payload(payload["StartTime"]),
            end=SearchTime.from_payload(payload["EndTime"]),
            size=_optional_int("size"),
            frame_rate=_optional_int("frameRate"),
            width=_optional_int("width"),
            height=_optional_int("height"),
            type=str(payload["type"]) if payload.get("type") is not None else None,
            raw=dict(payload),
        )


@dataclass(frozen=True, slots=True)
class PlaybackLocator:
    """Token-bearing URLs for fetching a recording from the device."""

    download_url: str
    playback_url: str
    file_name: str
    file_name_with_extension: str


def normalise_source_path(path: str) -> str:
    """Use forward slashes and collapse repeated separators.

    A leading slash reported by the device is preserved.
    """

    return re.sub(r"/{2,}", "/", path.strip().replace("\\", "/"))


class ReolinkClient:
    """Session-managing client for one camera or hub channel."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        channel: int = 0,
        *,
        scheme: str = "http",
        stream_type: str = "main",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        refresh_interval: float = 1800.0,
        tz: tzinfo | None = None,
        clock: Callable[[], float] = time.time,
        on_login: Callable[[Session], None] | None = None,
    ) -> None:
        self._host = host
        self._username = username
        self._password = password
        self._channel = int(channel)
        self._stream_type = stream_type
        self._base_url = f"{scheme}://{host}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, verify=False)
        self._tz = tz
        self._clock = clock
        self._on_login = on_login
        self._session: Session | None = None
        self._login_task: asyncio.Task[Session] | None = None
        self._refresher = PeriodicTask(
            f"reolink-session-{host}",
            self.refresh_session,
            interval=refresh_interval,
            run_immediately=False,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    @property
    def host(self) -> str:
        return self._host

    @property
    def channel(self) -> int:
        return self._channel

    @property
    def api_url(self) -> str:
        return f"{self._base_url}/cgi-bin/api.cgi"

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._login_task is not None and not self._login_task.done():
            return SessionState.LOGGING_IN
        session = self._session
        if session is not None and session.is_valid(self._clock()):
            return SessionState.AUTHENTICATED
        return SessionState.UNAUTHENTICATED

    async def login(self, *, force: bool = False) -> Session:
        """Return a valid session, logging in when required.

        Concurrent callers share a single in-flight login and its outcome.
        """

        session = self._session
        if not force and session is not None and session.is_valid(self._clock()):
            return session
        task = self._login_task
        if task is None or task.done():
            if session is not None:
                logger.info("Token for %s expired at %.0f, renewing", self._host, session.lease_expiry)
            task = asyncio.get_running_loop().create_task(self._perform_login())
            task.add_done_callback(self._on_login_done)
            self._login_task = task
        return await asyncio.shield(task)

    async def logout(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        body = [{"cmd": "Logout", "action": 0, "param": {}}]
        try:
            await self._client.post(
                self.api_url, params={"cmd": "Logout", "token": session.token}, json=body
            )
        except httpx.HTTPError as exc:
            logger.debug("Logout from %s failed: %s", self._host, exc)

    async def refresh_session(self) -> Session:
        """Drop the current token and log in again."""

        await self.logout()
        return await self.login(force=True)

    def start(self) -> None:
        self._refresher.start()

    async def aclose(self) -> None:
        await self._refresher.aclose()
        task = self._login_task
        if task is not None and not task.done():
            task.cancel()
        await self.logout()
        if self._owns_client:
            await self._client.aclose()

    async def _perform_login(self) -> Session:
        body = [
            {
                "cmd": "Login",
                "action": 0,
                "param": {
                    "User": {
                        "Version": "0",
                        "userName": self._username,
                        "password": self._password,
                    }
                },
            }
        ]
        try:
            response = await self._client.post(self.api_url, params={"cmd": "Login"}, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SessionError(
                f"Login to {self._host} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SessionError(f"Unable to reach {self._host} for login: {exc}") from exc
        except ValueError as exc:
            raise SessionError(f"Login to {self._host} returned invalid JSON") from exc

        entry = _first_entry(payload)
        error = entry.get("error") if entry is not None else None
        if entry is None or error:
            raise SessionError(f"Login to {self._host} rejected: {_describe_error(error)}")
        try:
            token_payload = entry["value"]["Token"]
            token = str(token_payload["name"])
            lease_seconds = float(token_payload["leaseTime"])
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionError(f"Login to {self._host} returned no token") from exc
        session = Session(token=token, lease_expiry=self._clock() + lease_seconds)
        self._session = session
        logger.info("Logged in to %s; lease %.0fs", self._host, lease_seconds)
        if self._on_login is not None:
            self._on_login(session)
        return session

    def _on_login_done(self, task: asyncio.Task[Session]) -> None:
        if self._login_task is task:
            self._login_task = None
        if not task.cancelled():
            # Mark the exception as retrieved when every waiter went away.
            task.exception()

    def _invalidate(self, session: Session) -> None:
        if self._session is session:
            self._session = None

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        cmd: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> httpx.Response:
        """Send an authenticated request, logging in again once on token rejection."""

        for attempt in (1, 2):
            session = await self.login()
            query = {"cmd": cmd, **dict(params or {}), "token": session.token}
            try:
                response = await self._client.request(
                    method, self.api_url, params=query, json=body
                )
            except httpx.HTTPError as exc:
                raise SourceError(f"{cmd} request to {self._host} failed: {exc}") from exc
            if not _is_token_rejection(response):
                return response
            self._invalidate(session)
            if attempt == 1:
                logger.info("%s rejected the token for %s; logging in again", self._host, cmd)
        raise SessionError(f"{self._host} rejected the session token for {cmd}")

    async def execute(self, cmd: str, param: Mapping[str, Any], *, action: int = 0) -> Any:
        """Run a single command and return its ``value`` payload."""

        body = [{"cmd": cmd, "action": action, "param": dict(param)}]
        response = await self._request("POST", cmd, body=body)
        if response.is_error:
            raise SourceError(f"{cmd} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError(f"{cmd} returned invalid JSON") from exc
        entry = _first_entry(payload)
        if entry is None:
            raise SourceError(f"{cmd} returned an empty response")
        error = entry.get("error")
        if error:
            raise SourceError(f"{cmd} failed: {_describe_error(error)}")
        return entry.get("value") or {}

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------
    async def search_window(self, window: ClipSearchWindow) -> list[SearchHit]:
        """Search one calendar-day window; the device rejects wider spans."""

        start = to_datetime(window.start, self._tz)
        end = to_datetime(window.end, self._tz)
        param = {
            "Search": {
                "channel": self._channel,
                "streamType": self._stream_type,
                "onlyStatus": 0,
                "StartTime": SearchTime.from_datetime(start).to_payload(),
                "EndTime": SearchTime.from_datetime(end).to_payload(),
            }
        }
        value = await self.execute("Search", param, action=1)
        result = value.get("SearchResult") if isinstance(value, Mapping) else None
        files = (result or {}).get("File") or []
        hits: list[SearchHit] = []
        for raw in files:
            try:
                hits.append(SearchHit.from_payload(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Ignoring malformed search hit from %s: %s", self._host, exc)
        return hits

    async def search(self, windows: Iterable[ClipSearchWindow]) -> list[SearchHit]:
        """Search every window in order and concatenate the hits.

        A window whose search fails contributes no hits.
        """

        hits: list[SearchHit] = []
        for window in windows:
            try:
                hits.extend(await self.search_window(window))
            except SourceError as exc:
                logger.warning(
                    "Search %d-%d on %s failed: %s", window.start, window.end, self._host, exc
                )
        return hits

    async def resolve_playback_locator(self, clip_id: str) -> PlaybackLocator:
        session = await self.login()
        source = normalise_source_path(clip_id)
        file_name_with_extension = source.rsplit("/", 1)[-1]
        file_name = file_name_with_extension.split(".", 1)[0]

        def _url(endpoint: str, cmd: str) -> str:
            query = urlencode(
                {
                    "cmd": cmd,
                    "source": source,
                    "output": file_name_with_extension,
                    "token": session.token,
                },
                quote_via=quote,
                safe="/",
            )
            return f"{endpoint}?{query}"

        return PlaybackLocator(
            download_url=_url(f"{self._base_url}/api.cgi", "Download"),
            playback_url=_url(self.api_url, "Playback"),
            file_name=file_name,
            file_name_with_extension=file_name_with_extension,
        )

    # ------------------------------------------------------------------
    # Ancillary device state
    # ------------------------------------------------------------------
    async def get_snapshot(self) -> bytes:
        response = await self._request(
            "GET", "Snap", params={"channel": self._channel, "rs": uuid.uuid4().hex[:16]}
        )
        if response.is_error or not response.content.startswith(b"\xff\xd8"):
            raise SourceError(f"Snapshot from {self._host} failed: {response.text[:200]}")
        return response.content

    async def get_battery_info(self) -> dict[str, Any]:
        value = await self.execute("GetBatteryInfo", {"channel": self._channel})
        battery = value.get("Battery") if isinstance(value, Mapping) else None
        return dict(battery or {})

    async def is_sleeping(self) -> bool:
        value = await self.execute("GetChannelstatus", {})
        for status in (value or {}).get("status", []):
            if int(status.get("channel", -1)) == self._channel:
                return bool(int(status.get("sleep", 0)))
        return False

    async def wake(self) -> None:
        """Read the white LED state, which brings a sleeping battery device online."""

        await self.execute("GetWhiteLed", {"channel": self._channel})

    async def set_white_led(self, enabled: bool, brightness: int | None = None) -> None:
        white_led: dict[str, Any] = {"channel": self._channel, "state": 1 if enabled else 0}
        if brightness is not None:
            if not 0 <= int(brightness) <= 100:
                raise ValueError("Brightness must be between 0 and 100")
            white_led["bright"] = int(brightness)
        await self.execute("SetWhiteLed", {"WhiteLed": white_led})


def _first_entry(payload: Any) -> Mapping[str, Any] | None:
    if isinstance(payload, list) and payload and isinstance(payload[0], Mapping):
        return payload[0]
    return None


def _describe_error(error: Any) -> str:
    if isinstance(error, Mapping):
        detail = error.get("detail") or "unknown error"
        code = error.get("rspCode")
        return f"{detail} (rspCode {code})" if code is not None else str(detail)
    return str(error) if error else "unknown error"


def _is_token_rejection(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    if response.headers.get("content-type", "").startswith(("image/", "video/")):
        return False
    try:
        entry = _first_entry(response.json())
    except ValueError:
        return False
    error = entry.get("error") if entry is not None else None
    if not isinstance(error, Mapping):
        return False
    try:
        return int(error.get("rspCode")) in _TOKEN_ERROR_CODES
    except (TypeError, ValueError):
        return False


__all__ = [
    "PlaybackLocator",
    "ReolinkClient",
    "SearchHit",
    "SearchTime",
    "Session",
    "SessionState",
    "normalise_source_path",
]
