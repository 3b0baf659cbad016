from fastapi import Depends, FastAPI, Header, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import asyncio
import json
import logging
import random
import string
import time
from datetime import datetime
from typing import Literal, Optional
import httpx

from . import cards
from .config import load_settings
from .errors import (
    CredentialExpiredError,
    DeviceCommandError,
    IndexOutOfRangeError,
    InsufficientPoolError,
    SessionNotStartedError,
)
from .models import Card, Credentials
from .playback import PlaybackController
from .session import GameSession
from .spotify import DECADES, DEFAULT_GENRES, SpotifyClient, build_auth_url, exchange_code, pick_device, refresh_tokens
from .store import CredentialStore, SessionStore

settings = load_settings()
app = FastAPI()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("bingo")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=settings.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health endpoint for connectivity checks
@app.get("/api/health")
def health():
    return {"ok": True}

# -------------------------------
# In-memory state
# -------------------------------
credentials = CredentialStore()
session_store = SessionStore()
# userId -> the player's current game; starting a new game reuses the object
games: dict[str, GameSession] = {}
controllers: dict[str, PlaybackController] = {}
clients: dict[str, list[WebSocket]] = {}
# state -> userId (short-lived)
spotify_states: dict[str, dict] = {}
SPOTIFY_STATE_TTL = 600
# Pause/volume restores still talking to a device after their game moved on
background_tasks: set[asyncio.Task] = set()
# Swapped out in tests to stub the Spotify Web API
spotify_transport: Optional[httpx.AsyncBaseTransport] = None


class GeneratePayload(BaseModel):
    allowFallback: bool = True
    decades: Optional[list[str]] = None
    genres: Optional[list[str]] = None
    patterns: Optional[Literal["base", "extended"]] = None


class CellPayload(BaseModel):
    index: int


class PlaybackStartPayload(BaseModel):
    deviceId: Optional[str] = None


class StoreTokensPayload(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str


def current_user(userId: Optional[str] = None, x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """The identity provider is external; its user id arrives as a query param or header."""
    return userId or x_user_id

def code8() -> str:
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))

def _now() -> int:
    return int(time.time())

def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})

# -------------------------------
# Spotify tokens
# -------------------------------

async def _refresh_credentials(user_id: str, reason: str) -> Optional[Credentials]:
    record = credentials.get(user_id)
    if not record or not record.refresh_token:
        return None
    logger.info(f"[spotify] token refresh user={user_id} reason={reason}")
    try:
        fresh = await refresh_tokens(settings, record, transport=spotify_transport)
    except (CredentialExpiredError, httpx.HTTPError) as exc:
        logger.warning(f"[spotify] token refresh user={user_id} failed exception={exc}")
        return None
    credentials.upsert(user_id, fresh)
    return fresh

async def _get_valid_token(user_id: str) -> Optional[str]:
    record = credentials.get(user_id)
    if not record:
        return None
    if CredentialStore.is_expired(record, _now()):
        record = await _refresh_credentials(user_id, "expired")
    return record.access_token if record else None

async def _client_for(user_id: str) -> Optional[SpotifyClient]:
    token = await _get_valid_token(user_id)
    if not token:
        return None

    async def on_expired() -> Optional[str]:
        record = await _refresh_credentials(user_id, "401")
        return record.access_token if record else None

    return SpotifyClient(token, on_expired, market=settings.spotify_market, transport=spotify_transport)

# -------------------------------
# Session persistence mirror (best-effort)
# -------------------------------

def _persist_new(user_id: str, card: Card) -> Optional[str]:
    try:
        return session_store.create_session(user_id, card)
    except Exception as exc:
        logger.warning(f"[persist] create user={user_id} failed: {exc}")
        return None

def _mirror(game: GameSession, fields: dict) -> None:
    if not game.id:
        return
    try:
        session_store.update_session(game.id, fields)
    except Exception as exc:
        logger.warning(f"[persist] update session={game.id} failed: {exc}")

# -------------------------------
# WebSocket fan-out
# -------------------------------

async def broadcast(user_id: str, event: str, data: dict):
    dead = []
    for sock in clients.get(user_id, []):
        try:
            await sock.send_text(json.dumps({"event": event, "data": data}))
        except Exception:
            dead.append(sock)
    for sock in dead:
        if sock in clients.get(user_id, []):
            clients[user_id].remove(sock)

def _event_sink(user_id: str):
    async def sink(event: str, data: dict):
        if event == "session:update":
            game = games.get(user_id)
            if game:
                _mirror(game, {"current_song_index": game.current_index})
        await broadcast(user_id, event, data)
    return sink

@app.websocket("/ws/{user_id}")
async def ws_session(ws: WebSocket, user_id: str):
    await ws.accept()
    clients.setdefault(user_id, []).append(ws)
    game = games.get(user_id)
    if game:
        await ws.send_text(json.dumps({"event": "session:update", "data": game.snapshot()}))
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if msg.get("event") == "sync":
                game = games.get(user_id)
                controller = controllers.get(user_id)
                await ws.send_text(json.dumps({
                    "event": "session:update",
                    "data": game.snapshot() if game else None,
                }))
                if controller:
                    await ws.send_text(json.dumps({"event": "timer:tick", "data": controller.status()}))
    except WebSocketDisconnect:
        if user_id in clients and ws in clients[user_id]:
            clients[user_id].remove(ws)

# -------------------------------
# Bingo game
# -------------------------------

def _halt_playback(user_id: str) -> Optional[asyncio.Task]:
    controller = controllers.pop(user_id, None)
    task = controller.halt() if controller else None
    if task is not None:
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)
    return task

async def _stop_playback(user_id: str):
    task = _halt_playback(user_id)
    if task is not None:
        await task

@app.post("/api/bingo/generate")
async def generate_card(payload: GeneratePayload, user_id: Optional[str] = Depends(current_user)):
    if not user_id:
        return _error(401, "User ID required")
    card: Optional[Card] = None
    failure: Optional[JSONResponse] = None
    client = await _client_for(user_id)
    if client is None:
        failure = _error(400, "Spotify not connected")
    else:
        try:
            pool = await client.fetch_pool(
                decades=payload.decades or tuple(DECADES),
                genres=payload.genres or DEFAULT_GENRES,
            )
            card = cards.generate(pool)
        except InsufficientPoolError as exc:
            failure = _error(409, str(exc), required=exc.required, actual=exc.actual)
        except CredentialExpiredError as exc:
            failure = _error(401, str(exc))
    fallback = card is None
    if fallback:
        if not payload.allowFallback:
            return failure
        logger.info(f"[generate] user={user_id} using demo card")
        card = cards.demo_card()

    # The old game's device restore finishes in the background
    _halt_playback(user_id)
    game = games.setdefault(user_id, GameSession(user_id=user_id))
    game.catalog = payload.patterns or settings.patterns
    game.start(card, _persist_new(user_id, card))
    snapshot = game.snapshot()
    await broadcast(user_id, "session:update", snapshot)
    return {"success": True, "fallback": fallback, "gameSessionId": game.id, "session": snapshot}

@app.get("/api/bingo/session")
def get_session(user_id: Optional[str] = Depends(current_user)):
    game = games.get(user_id) if user_id else None
    if not game:
        return Response("No game", status_code=404)
    return game.snapshot()

@app.post("/api/bingo/toggle")
async def toggle_cell(payload: CellPayload, user_id: Optional[str] = Depends(current_user)):
    game = games.get(user_id) if user_id else None
    if not game:
        return Response("No game", status_code=404)
    was_completed = game.completed
    try:
        game.toggle_cell(payload.index)
    except IndexOutOfRangeError as exc:
        return _error(400, str(exc))
    except SessionNotStartedError as exc:
        return _error(409, str(exc))
    fields = {"stamped_cells": sorted(game.marked), "is_completed": game.completed}
    snapshot = game.snapshot()
    if game.completed and not was_completed:
        fields.update({"winning_pattern": game.winning_pattern, "completed_at": _now()})
        await broadcast(user_id, "bingo", {"sessionId": game.id, "pattern": game.winning_pattern})
    _mirror(game, fields)
    await broadcast(user_id, "session:update", snapshot)
    return snapshot

@app.post("/api/bingo/advance")
async def advance(payload: CellPayload, user_id: Optional[str] = Depends(current_user)):
    game = games.get(user_id) if user_id else None
    if not game:
        return Response("No game", status_code=404)
    controller = controllers.get(user_id)
    try:
        if controller:
            # mirrors and broadcasts through the controller's event sink
            await controller.jump_to(payload.index)
        else:
            game.advance_to(payload.index)
    except IndexOutOfRangeError as exc:
        return _error(400, str(exc))
    except SessionNotStartedError as exc:
        return _error(409, str(exc))
    snapshot = game.snapshot()
    if not controller:
        _mirror(game, {"current_song_index": game.current_index})
        await broadcast(user_id, "session:update", snapshot)
    return snapshot

# -------------------------------
# Playback
# -------------------------------

@app.post("/api/playback/start")
async def playback_start(payload: PlaybackStartPayload, user_id: Optional[str] = Depends(current_user)):
    game = games.get(user_id) if user_id else None
    if not game or game.card is None:
        return Response("No game", status_code=409)
    client = await _client_for(user_id)
    if not client:
        return Response("Not linked", status_code=401)
    try:
        devices = await client.list_devices()
    except DeviceCommandError as exc:
        logger.warning(f"[playback] user={user_id} device listing failed: {exc}")
        return _error(502, str(exc))
    device = pick_device(devices, payload.deviceId)
    if not device:
        return Response("No Spotify device available", status_code=404)
    controller = controllers.get(user_id)
    if controller and controller.device.id != device.id:
        await _stop_playback(user_id)
        controller = None
    if controller is None:
        controller = PlaybackController(game, client, device, settings, on_event=_event_sink(user_id))
        controllers[user_id] = controller
    await controller.start()
    return {"ok": True, "device": device.model_dump(), "timer": controller.status()}

@app.post("/api/playback/stop")
async def playback_stop(user_id: Optional[str] = Depends(current_user)):
    if not user_id:
        return Response("Missing userId", status_code=400)
    await _stop_playback(user_id)
    return Response(status_code=204)

async def _skip(user_id: Optional[str], forward: bool):
    game = games.get(user_id) if user_id else None
    if not game or game.card is None:
        return Response("No game", status_code=409)
    controller = controllers.get(user_id)
    if controller:
        moved = await (controller.next() if forward else controller.previous())
    else:
        index = game.current_index + (1 if forward else -1)
        moved = 0 <= index < game.item_count
        if moved:
            game.advance_to(index)
            _mirror(game, {"current_song_index": index})
            await broadcast(user_id, "session:update", game.snapshot())
    return {"moved": moved, "currentIndex": game.current_index}

@app.post("/api/playback/next")
async def playback_next(user_id: Optional[str] = Depends(current_user)):
    return await _skip(user_id, forward=True)

@app.post("/api/playback/previous")
async def playback_previous(user_id: Optional[str] = Depends(current_user)):
    return await _skip(user_id, forward=False)

# -------------------------------
# Spotify OAuth + devices
# -------------------------------

@app.get("/api/spotify/login")
def spotify_login(user_id: Optional[str] = Depends(current_user)):
    if not user_id:
        return Response("Missing userId", status_code=400)
    if not settings.spotify_client_id or not settings.spotify_redirect_uri:
        return {"error": "Spotify not configured on server"}
    now = _now()
    for stale in [s for s, entry in spotify_states.items() if now - entry["ts"] > SPOTIFY_STATE_TTL]:
        del spotify_states[stale]
    state = code8()
    spotify_states[state] = {"userId": user_id, "ts": now}
    return {"authorize_url": build_auth_url(settings, state), "state": state}

def _choose_frontend_origin() -> str:
    if settings.frontend_public_url:
        return settings.frontend_public_url.rstrip('/')
    # Prefer an https, non-localhost origin from the CORS list
    origins = [o for o in settings.allow_origins if o != "*"]
    for prefer_https in (True, False):
        for o in origins:
            if "localhost" in o:
                continue
            if prefer_https and not o.startswith("https://"):
                continue
            return o
    return origins[0] if origins else "http://localhost:3000"

@app.get("/api/spotify/callback")
async def spotify_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    frontend = _choose_frontend_origin()
    if error:
        logger.warning(f"[spotify_callback] auth error={error}")
        return Response(status_code=302, headers={"Location": f"{frontend}/?error=spotify_auth_failed"})
    if not code or not state or state not in spotify_states:
        logger.warning(f"[spotify_callback] invalid state: code={code}, state={state}")
        return Response("Invalid state", status_code=400)
    user_id = spotify_states.pop(state)["userId"]
    try:
        record = await exchange_code(settings, code, transport=spotify_transport)
    except httpx.HTTPError as e:
        logger.error(f"[spotify_callback] token exchange failed for user={user_id}: {e}")
        return Response(status_code=302, headers={"Location": f"{frontend}/?error=callback_failed"})
    credentials.upsert(user_id, record)
    loc = f"{frontend}/spotify-success?spotify=ok"
    logger.info(f"[spotify_callback] redirecting to {loc}")
    return Response(status_code=302, headers={"Location": loc})

@app.post("/api/spotify/store-tokens")
def store_tokens(payload: StoreTokensPayload):
    record = Credentials(
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        expires_at=int(payload.expires_at.timestamp()),
        scope=payload.scope,
    )
    credentials.upsert(payload.user_id, record)
    return {"success": True}

@app.get("/api/spotify/status")
def spotify_status(user_id: Optional[str] = Depends(current_user)):
    record = credentials.get(user_id) if user_id else None
    if not record:
        return {"linked": False, "expired": None}
    return {"linked": True, "expired": CredentialStore.is_expired(record, _now())}

@app.delete("/api/spotify/link")
async def spotify_unlink(user_id: Optional[str] = Depends(current_user)):
    if not user_id:
        return Response("Missing userId", status_code=400)
    await _stop_playback(user_id)
    credentials.delete(user_id)
    return Response(status_code=204)

@app.get("/api/spotify/devices")
async def spotify_devices(user_id: Optional[str] = Depends(current_user)):
    client = await _client_for(user_id) if user_id else None
    if not client:
        return Response("Not linked", status_code=401)
    try:
        devices = await client.list_devices()
    except DeviceCommandError as exc:
        return _error(502, str(exc))
    return {"devices": [d.model_dump() for d in devices]}
