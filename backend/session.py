import logging
import uuid
from typing import Literal, Optional

from pydantic import BaseModel, Field

from .errors import IndexOutOfRangeError, SessionNotStartedError
from .models import FREE_INDEX, GRID_SIZE, Card
from . import patterns

logger = logging.getLogger("bingo.session")


class GameSession(BaseModel):
    """One player's game against one card.

    fresh -> active -> completed. Nothing leaves completed except a new
    ``start``, which deals a fresh game.
    """

    user_id: str
    id: Optional[str] = None
    card: Optional[Card] = None
    marked: set[int] = Field(default_factory=set)
    completed: bool = False
    winning_pattern: Optional[str] = None
    current_index: int = 0
    catalog: Literal["base", "extended"] = "base"

    @property
    def state(self) -> str:
        if self.card is None:
            return "fresh"
        return "completed" if self.completed else "active"

    @property
    def item_count(self) -> int:
        return self.card.item_count if self.card else 0

    def _require_card(self) -> Card:
        if self.card is None:
            raise SessionNotStartedError()
        return self.card

    def start(self, card: Card, session_id: Optional[str] = None) -> None:
        if self.card is not None and not self.completed:
            logger.info(f"[session] user={self.user_id} abandoning session={self.id}")
        self.id = session_id or uuid.uuid4().hex
        self.card = card
        self.marked = set()
        self.completed = False
        self.winning_pattern = None
        self.current_index = 0
        logger.info(f"[session] user={self.user_id} start session={self.id} card={card.id}")

    def toggle_cell(self, index: int) -> Optional[str]:
        """Flip the mark on ``index``; returns the winning pattern if the game is won."""
        self._require_card()
        if not 0 <= index < GRID_SIZE:
            raise IndexOutOfRangeError(index, GRID_SIZE)
        if self.completed or index == FREE_INDEX:
            return self.winning_pattern
        if index in self.marked:
            self.marked.discard(index)
        else:
            self.marked.add(index)
        pattern = patterns.evaluate(self.marked, patterns.catalog(self.catalog))
        if pattern:
            self.completed = True
            self.winning_pattern = pattern
            logger.info(f"[session] user={self.user_id} session={self.id} bingo pattern={pattern}")
        return pattern

    def advance_to(self, index: int) -> None:
        card = self._require_card()
        if not 0 <= index < card.item_count:
            raise IndexOutOfRangeError(index, card.item_count)
        self.current_index = index

    def is_marked(self, index: int) -> bool:
        return index == FREE_INDEX or index in self.marked

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "state": self.state,
            "card": self.card.model_dump(mode="json") if self.card else None,
            "markedCells": sorted(self.marked),
            "completed": self.completed,
            "winningPattern": self.winning_pattern,
            "currentIndex": self.current_index,
            "catalog": self.catalog,
        }
