import logging
import time
import uuid
from typing import Optional

from .models import Card, Credentials

logger = logging.getLogger("bingo.store")


class CredentialStore:
    """Spotify credentials keyed by user id."""

    def __init__(self):
        self._records: dict[str, Credentials] = {}

    def get(self, user_id: str) -> Optional[Credentials]:
        return self._records.get(user_id)

    def upsert(self, user_id: str, record: Credentials) -> None:
        self._records[user_id] = record
        logger.info(f"[credentials] stored user={user_id} expires_at={record.expires_at}")

    def delete(self, user_id: str) -> None:
        if self._records.pop(user_id, None) is not None:
            logger.info(f"[credentials] removed user={user_id}")

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._records

    @staticmethod
    def is_expired(record: Credentials, now: Optional[int] = None) -> bool:
        return record.expires_at < (int(time.time()) if now is None else now)


class SessionStore:
    """Historical record of game sessions; mirrors the in-memory state."""

    def __init__(self):
        self._rows: dict[str, dict] = {}

    def create_session(self, user_id: str, card: Card) -> str:
        session_id = uuid.uuid4().hex
        self._rows[session_id] = {
            "id": session_id,
            "user_id": user_id,
            "bingo_card": card.model_dump(mode="json"),
            "created_at": int(time.time()),
            "stamped_cells": [],
            "is_completed": False,
            "current_song_index": 0,
        }
        return session_id

    def update_session(self, session_id: str, fields: dict) -> None:
        row = self._rows.get(session_id)
        if row is None:
            raise KeyError(session_id)
        row.update(fields)

    def get(self, session_id: str) -> Optional[dict]:
        return self._rows.get(session_id)

    def for_user(self, user_id: str) -> list[dict]:
        return [row for row in self._rows.values() if row["user_id"] == user_id]
