import logging
import re
import uuid
from typing import Iterable

from .errors import InsufficientPoolError
from .models import CARD_ITEMS, FREE_INDEX, GRID_SIZE, Card, Cell, Track

logger = logging.getLogger("bingo.cards")

FREE_LABEL = "FREE"
UNTITLED = "Untitled"

_TITLE_NOISE = [
    re.compile(r"\s*\(feat\..*?\)", re.IGNORECASE),
    re.compile(r"\s*\(featuring.*?\)", re.IGNORECASE),
    re.compile(r"\s*\bfeat\..*$", re.IGNORECASE),
    re.compile(r"\s*\([^)]*remix[^)]*\)", re.IGNORECASE),
    re.compile(r"\s*\([^)]*version[^)]*\)", re.IGNORECASE),
    re.compile(r"\s*\([^)]*edit[^)]*\)", re.IGNORECASE),
    re.compile(r"\s*\([^)]*remaster[^)]*\)", re.IGNORECASE),
]

DEMO_LABELS = [
    "Taylor Swift - Shake It Off",
    "Ed Sheeran - Shape of You",
    "Billie Eilish - Bad Guy",
    "The Weeknd - Blinding Lights",
    "Dua Lipa - Levitating",
    "Harry Styles - As It Was",
    "Olivia Rodrigo - Good 4 U",
    "Post Malone - Circles",
    "Ariana Grande - 7 rings",
    "Drake - God's Plan",
    "Bruno Mars - Uptown Funk",
    "Adele - Rolling in the Deep",
    "Imagine Dragons - Believer",
    "Maroon 5 - Sugar",
    "Justin Bieber - Sorry",
    "Rihanna - Umbrella",
    "Katy Perry - Roar",
    "Lady Gaga - Bad Romance",
    "Beyoncé - Single Ladies",
    "Eminem - Lose Yourself",
    "Coldplay - Viva La Vida",
    "OneRepublic - Counting Stars",
    "Sia - Chandelier",
    "Sam Smith - Stay With Me",
]


def _strip_noise(title: str) -> str:
    cleaned = title
    for rx in _TITLE_NOISE:
        cleaned = rx.sub("", cleaned)
    return cleaned.strip()


def clean_title(title: str) -> str:
    """Drop featuring credits and remix/version/edit/remaster tags from a song title.

    Runs until nothing more is removed, so cleaning a clean title is a no-op.
    Never returns an empty string.
    """
    cleaned = title
    while True:
        stripped = _strip_noise(cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped
    return cleaned or title.strip() or UNTITLED


def label_for(track: Track) -> str:
    return f"{track.artist} - {clean_title(track.title)}"


def _position_for(item_index: int) -> int:
    return item_index if item_index < FREE_INDEX else item_index + 1


def _build(tracks: list[Track], labels: list[str]) -> Card:
    cells: list[Cell] = [None] * GRID_SIZE  # type: ignore[list-item]
    cells[FREE_INDEX] = Cell(index=FREE_INDEX, label=FREE_LABEL, is_free=True)
    for k, (track, label) in enumerate(zip(tracks, labels)):
        pos = _position_for(k)
        cells[pos] = Cell(index=pos, label=label, track=track)
    return Card(id=f"bingo-{uuid.uuid4().hex}", cells=tuple(cells), tracks=tuple(tracks))


def generate(pool: Iterable[Track]) -> Card:
    """Fill a 5x5 card from the first 24 distinct tracks of ``pool``.

    Order is taken as given; shuffle before calling for a random card.
    """
    selected: list[Track] = []
    seen: set[str] = set()
    for track in pool:
        if track.id in seen:
            continue
        seen.add(track.id)
        selected.append(track)
        if len(selected) == CARD_ITEMS:
            break
    if len(selected) < CARD_ITEMS:
        logger.warning(f"[generate] insufficient pool distinct={len(selected)} required={CARD_ITEMS}")
        raise InsufficientPoolError(CARD_ITEMS, len(selected))
    card = _build(selected, [label_for(t) for t in selected])
    logger.info(f"[generate] card={card.id} first={selected[0].id}")
    return card


def demo_card() -> Card:
    """Placeholder card for when no track pool is available."""
    tracks = []
    for i, label in enumerate(DEMO_LABELS):
        artist, _, title = label.partition(" - ")
        tracks.append(Track(id=f"demo-{i:02d}", title=title, artist=artist))
    return _build(tracks, DEMO_LABELS)
