import logging
import random
import time
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

import httpx

from .config import Settings
from .errors import CredentialExpiredError, DeviceCommandError, SpotifyAPIError
from .models import Credentials, Device, Track

logger = logging.getLogger("bingo.spotify")

ACCOUNTS_URL = "https://accounts.spotify.com"
API_URL = "https://api.spotify.com/v1"
SPOTIFY_SCOPES = (
    "user-read-private user-read-email streaming user-read-playback-state "
    "user-modify-playback-state playlist-read-private playlist-read-collaborative"
)

DECADES = {
    "80s": "1980-1989",
    "90s": "1990-1999",
    "2000s": "2000-2009",
    "2010s": "2010-2019",
    "2020s": "2020-2024",
}
DEFAULT_GENRES = ("pop", "rock", "hip-hop", "r&b")


def _now() -> int:
    return int(time.time())


# -------------------------------
# OAuth
# -------------------------------

def build_auth_url(settings: Settings, state: str) -> str:
    q = {
        "response_type": "code",
        "client_id": settings.spotify_client_id,
        "scope": SPOTIFY_SCOPES,
        "redirect_uri": settings.spotify_redirect_uri,
        "state": state,
        "show_dialog": "false",
    }
    return f"{ACCOUNTS_URL}/authorize?{urlencode(q)}"


def _credentials_from(token: dict, previous: Optional[Credentials] = None) -> Credentials:
    refresh = token.get("refresh_token") or (previous.refresh_token if previous else "")
    return Credentials(
        access_token=token["access_token"],
        refresh_token=refresh,
        # expire a little early so a request never races the real expiry
        expires_at=_now() + int(token.get("expires_in", 3600)) - 30,
        scope=token.get("scope") or (previous.scope if previous else ""),
    )


async def exchange_code(
    settings: Settings, code: str, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Credentials:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.spotify_redirect_uri,
        "client_id": settings.spotify_client_id,
        "client_secret": settings.spotify_client_secret,
    }
    async with httpx.AsyncClient(timeout=20, transport=transport) as client:
        r = await client.post(f"{ACCOUNTS_URL}/api/token", data=data)
    r.raise_for_status()
    return _credentials_from(r.json())


async def refresh_tokens(
    settings: Settings, previous: Credentials, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Credentials:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": previous.refresh_token,
        "client_id": settings.spotify_client_id,
        "client_secret": settings.spotify_client_secret,
    }
    async with httpx.AsyncClient(timeout=20, transport=transport) as client:
        r = await client.post(f"{ACCOUNTS_URL}/api/token", data=data)
    if r.status_code >= 400:
        logger.warning(f"[spotify] token refresh failed code={r.status_code}")
        raise CredentialExpiredError(f"Token refresh failed: {r.status_code}")
    # Spotify does not always rotate the refresh token
    return _credentials_from(r.json(), previous)


# -------------------------------
# Mapping
# -------------------------------

def map_track(item: dict) -> Optional[Track]:
    t = item.get("track") or item
    if not t:
        return None
    track_id = t.get("id")
    name = t.get("name")
    artists = [a.get("name") for a in t.get("artists", []) if a.get("name")]
    if not (track_id and name and artists):
        return None
    images = (t.get("album") or {}).get("images") or []
    return Track(
        id=track_id,
        title=name,
        artist=artists[0],
        duration_ms=int(t.get("duration_ms") or 0),
        images=tuple(img["url"] for img in images if img.get("url")),
    )


def map_device(d: dict) -> Device:
    volume = d.get("volume_percent")
    return Device(
        id=d["id"],
        name=d.get("name") or d["id"],
        type=d.get("type") or "Unknown",
        is_active=bool(d.get("is_active")),
        # a muted device reports 0, devices without volume control report null
        volume_percent=50 if volume is None else volume,
    )


def pick_device(devices: list[Device], device_id: Optional[str] = None) -> Optional[Device]:
    """Requested device if present, else the active one, else the first."""
    if device_id:
        for d in devices:
            if d.id == device_id:
                return d
        return None
    for d in devices:
        if d.is_active:
            return d
    return devices[0] if devices else None


# -------------------------------
# Web API client
# -------------------------------

class SpotifyClient:
    """Track search and player control for one user's access token.

    ``on_expired`` is awaited once on a 401 and must return a fresh access
    token (or None). The request is retried once with it; a second 401
    raises CredentialExpiredError.
    """

    def __init__(
        self,
        access_token: str,
        on_expired: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
        *,
        market: str = "US",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.on_expired = on_expired
        self.market = market
        self.transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{API_URL}{path}"
        async with httpx.AsyncClient(timeout=20, transport=self.transport) as client:
            r = await client.request(method, url, headers=self._headers(), **kwargs)
            if r.status_code == 401 and self.on_expired is not None:
                logger.info(f"[spotify] 401 on {method} {path}, refreshing token")
                new_token = await self.on_expired()
                if new_token:
                    self.access_token = new_token
                    r = await client.request(method, url, headers=self._headers(), **kwargs)
        if r.status_code == 401:
            raise CredentialExpiredError()
        return r

    async def _command(self, command: str, method: str, path: str, **kwargs) -> None:
        try:
            r = await self._request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise DeviceCommandError(command, detail=str(exc)) from exc
        except CredentialExpiredError as exc:
            raise DeviceCommandError(command, 401, str(exc)) from exc
        if r.status_code >= 400:
            raise DeviceCommandError(command, r.status_code, r.text)

    # Track source

    async def search_tracks(self, query: str, limit: int = 25) -> list[Track]:
        params = {"q": query, "type": "track", "limit": limit, "market": self.market}
        try:
            r = await self._request("GET", "/search", params=params)
        except httpx.HTTPError as exc:
            raise SpotifyAPIError(f"search failed: {exc}") from exc
        if r.status_code >= 400:
            raise SpotifyAPIError(f"search failed: {r.text}", r.status_code)
        items = r.json().get("tracks", {}).get("items", [])
        return [t for t in (map_track(it) for it in items) if t]

    async def fetch_pool(
        self,
        decades: Iterable[str] = tuple(DECADES),
        genres: Iterable[str] = DEFAULT_GENRES,
        per_query: int = 25,
        shuffle: bool = True,
    ) -> list[Track]:
        """Search every decade/genre pair and return the deduplicated, shuffled union.

        A failing query is logged and skipped; an expired token is not.
        """
        genres = list(genres)
        pool: list[Track] = []
        seen: set[str] = set()
        for decade in decades:
            years = DECADES.get(decade, "1980-2024")
            for genre in genres:
                query = f"year:{years} genre:{genre}"
                try:
                    tracks = await self.search_tracks(query, per_query)
                except CredentialExpiredError:
                    raise
                except SpotifyAPIError as exc:
                    logger.warning(f"[pool] query={query!r} failed: {exc}")
                    continue
                for t in tracks:
                    if t.id not in seen:
                        seen.add(t.id)
                        pool.append(t)
        if shuffle:
            random.shuffle(pool)
        logger.info(f"[pool] fetched distinct={len(pool)}")
        return pool

    # Playback device

    async def list_devices(self) -> list[Device]:
        try:
            r = await self._request("GET", "/me/player/devices")
        except httpx.HTTPError as exc:
            raise DeviceCommandError("devices", detail=str(exc)) from exc
        if r.status_code >= 400:
            raise DeviceCommandError("devices", r.status_code, r.text)
        return [map_device(d) for d in r.json().get("devices", []) if d.get("id")]

    async def transfer(self, device_id: str, play: bool = False) -> None:
        await self._command("transfer", "PUT", "/me/player", json={"device_ids": [device_id], "play": play})

    async def play_at(self, device_id: str, track: Track, position_fraction: float = 0.0) -> None:
        duration = track.duration_ms or 180000
        body = {"uris": [track.uri], "position_ms": round(duration * position_fraction)}
        await self._command("play", "PUT", "/me/player/play", params={"device_id": device_id}, json=body)

    async def pause(self, device_id: Optional[str] = None) -> None:
        params = {"device_id": device_id} if device_id else None
        await self._command("pause", "PUT", "/me/player/pause", params=params)

    async def set_volume(self, device_id: str, percent: int) -> None:
        params = {"volume_percent": max(0, min(100, int(percent))), "device_id": device_id}
        await self._command("volume", "PUT", "/me/player/volume", params=params)
