from __future__ import annotations

import logging
from functools import lru_cache
from threading import Lock
from typing import Any, Protocol

from config import SESSIONS_TABLE, SUPABASE_KEY, SUPABASE_URL
from models import AnalysisResult, PracticeSession

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def save(self, result: AnalysisResult) -> PracticeSession: ...

    def fetch_all(self) -> list[PracticeSession]: ...

    def get(self, session_id: str) -> PracticeSession | None: ...

    def delete(self, session_id: str) -> bool: ...

    def delete_all(self) -> int: ...


class InMemorySessionStore:
    """
    Very simple in-memory store for tests and local development.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, PracticeSession] = {}
        self._lock = Lock()

    def save(self, result: AnalysisResult) -> PracticeSession:
        session = PracticeSession(result=result)
        with self._lock:
            self._sessions[session.id] = session
        return session

    def fetch_all(self) -> list[PracticeSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted(sessions, key=lambda session: session.created_at, reverse=True)

    def get(self, session_id: str) -> PracticeSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
        return count


def _to_row(session: PracticeSession) -> dict[str, Any]:
    return session.model_dump(mode="json")


def _from_row(row: dict[str, Any]) -> PracticeSession:
    return PracticeSession.model_validate(row)


class SupabaseSessionStore:
    """Practice history kept in a Supabase table with a JSON `result` column."""

    def __init__(self, client: Any, table: str = SESSIONS_TABLE) -> None:
        self.client = client
        self.table = table

    def save(self, result: AnalysisResult) -> PracticeSession:
        session = PracticeSession(result=result)
        self.client.table(self.table).insert(_to_row(session)).execute()
        logger.info("Saved practice session %s", session.id)
        return session

    def fetch_all(self) -> list[PracticeSession]:
        response = (
            self.client.table(self.table).select("*").order("created_at", desc=True).execute()
        )
        return [_from_row(row) for row in response.data or []]

    def get(self, session_id: str) -> PracticeSession | None:
        response = (
            self.client.table(self.table).select("*").eq("id", session_id).limit(1).execute()
        )
        rows = response.data or []
        return _from_row(rows[0]) if rows else None

    def delete(self, session_id: str) -> bool:
        response = self.client.table(self.table).delete().eq("id", session_id).execute()
        return bool(response.data)

    def delete_all(self) -> int:
        # Supabase refuses unfiltered deletes.
        response = self.client.table(self.table).delete().neq("id", "").execute()
        return len(response.data or [])


@lru_cache(maxsize=1)
def get_supabase_client():
    from supabase import create_client

    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set.")
    return create_client(SUPABASE_URL, SUPABASE_KEY)
