from typing import Optional

from pydantic import BaseModel, ConfigDict

FREE_INDEX = 12
GRID_SIZE = 25
CARD_ITEMS = GRID_SIZE - 1


class Track(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    artist: str
    duration_ms: int = 0
    images: tuple[str, ...] = ()

    @property
    def uri(self) -> str:
        return self.id if self.id.startswith("spotify:") else f"spotify:track:{self.id}"


class Cell(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    label: str
    track: Optional[Track] = None
    is_free: bool = False


class Card(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    cells: tuple[Cell, ...]
    tracks: tuple[Track, ...]

    @property
    def item_count(self) -> int:
        return len(self.tracks)


class Device(BaseModel):
    id: str
    name: str
    type: str = "Unknown"
    is_active: bool = False
    volume_percent: int = 50


class Credentials(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: int
    scope: str = ""
