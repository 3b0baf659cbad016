import os
import re
from typing import Literal, Optional

from pydantic import BaseModel


class Settings(BaseModel):
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    spotify_redirect_uri: Optional[str] = None
    spotify_market: str = "US"

    allow_origins: list[str] = ["http://localhost:3000", "http://localhost:8081"]
    allow_credentials: bool = True
    frontend_public_url: Optional[str] = None

    # Playback timing, in seconds
    song_seconds: int = 30
    tick_seconds: float = 1.0
    fade_out_at: int = 2
    play_position_fraction: float = 0.3
    transfer_delay: float = 0.5
    fade_in_start_volume: int = 5
    fade_in_delay: float = 0.3
    fade_in_seconds: float = 2.0
    fade_in_steps: int = 20
    fade_out_seconds: float = 1.5
    fade_out_steps: int = 15

    patterns: Literal["base", "extended"] = "base"


def _parse_origins(raw: str) -> tuple[list[str], bool]:
    # '*' allows every origin but browsers refuse credentials with it
    if raw.strip() == "*":
        return (["*"], False)
    parts = re.split(r"[\s,]+", raw.strip())
    return ([p.rstrip("/") for p in parts if p], True)


def load_settings() -> Settings:
    values: dict = {
        "spotify_client_id": os.getenv("SPOTIFY_CLIENT_ID", ""),
        "spotify_client_secret": os.getenv("SPOTIFY_CLIENT_SECRET", ""),
        "spotify_redirect_uri": os.getenv("SPOTIFY_REDIRECT_URI"),
        "frontend_public_url": os.getenv("FRONTEND_PUBLIC_URL"),
    }
    origins_env = os.getenv("FRONTEND_ORIGINS") or os.getenv("FRONTEND_ORIGIN")
    if origins_env:
        values["allow_origins"], values["allow_credentials"] = _parse_origins(origins_env)
    for key, env in (
        ("song_seconds", "SONG_SECONDS"),
        ("play_position_fraction", "PLAY_POSITION_FRACTION"),
        ("transfer_delay", "TRANSFER_DELAY"),
        ("patterns", "BINGO_PATTERNS"),
        ("spotify_market", "SPOTIFY_MARKET"),
    ):
        val = os.getenv(env)
        if val:
            values[key] = val
    return Settings(**values)
