"""
sessions.py - in-memory assessment session store.

Status machine (terminal states are absorbing):

    queued -> running -> (partial | running)* -> done | error

Design:
  - The store is an explicitly constructed object (app.state.sessions), never a module global
  - Every mutator is a no-op when the session was already evicted by GC (accepted race)
  - Every mutator is a no-op once the session is done/error
  - updated_at is milliseconds since epoch and increases on every mutation
  - set_assessment_persisted() is the one-shot latch guarding the persistence gate;
    it is the only operation that must be race-free, and it takes the store lock
  - Readers get immutable snapshots (ChatSessionSnapshot), never the live record
  - No durability: a process restart loses every session
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from skillpath.agents.assessment_agent.schemas import ChatStatus

logger = logging.getLogger(__name__)

STALLED_ERROR = "generation_stalled"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ChatSession:
    session_id: str
    started_at: int
    updated_at: int
    status: ChatStatus = ChatStatus.queued
    text: str = ""
    error: Optional[str] = None
    assessment_persisted: bool = False


@dataclass(frozen=True)
class ChatSessionSnapshot:
    session_id: str
    started_at: int
    updated_at: int
    status: ChatStatus
    text: str
    error: Optional[str]
    assessment_persisted: bool


class SessionStore:
    """Process-local table of ChatSession keyed by session id."""

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, ChatSession] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self) -> ChatSessionSnapshot:
        now = self._clock()
        session = ChatSession(
            session_id=f"sess_{uuid.uuid4().hex}",
            started_at=now,
            updated_at=now,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Created chat session session_id=%s", session.session_id)
        return self._snapshot(session)

    def get(self, session_id: str) -> Optional[ChatSessionSnapshot]:
        with self._lock:
            session = self._sessions.get(session_id)
            return self._snapshot(session) if session else None

    def snapshot(self, session_id: str) -> Optional[ChatSessionSnapshot]:
        return self.get(session_id)

    def teardown(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def set_running(self, session_id: str) -> None:
        with self._lock:
            session = self._mutable(session_id)
            if session:
                session.status = ChatStatus.running
                self._touch(session)

    def append_partial(self, session_id: str, chunk: str) -> None:
        if not chunk:
            return
        with self._lock:
            session = self._mutable(session_id)
            if session:
                session.text += chunk
                session.status = ChatStatus.partial
                self._touch(session)

    def set_done(self, session_id: str) -> None:
        with self._lock:
            session = self._mutable(session_id)
            if session:
                session.status = ChatStatus.done
                self._touch(session)

    def set_error(self, session_id: str, message: str) -> None:
        with self._lock:
            session = self._mutable(session_id)
            if session:
                session.status = ChatStatus.error
                session.error = message
                self._touch(session)

    def set_assessment_persisted(self, session_id: str) -> bool:
        """
        Test-and-set the one-shot persistence latch.
        Returns True only for the single caller that flipped it.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.assessment_persisted:
                return False
            session.assessment_persisted = True
            self._touch(session)
            return True

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def cleanup(
        self,
        max_age_ms: int,
        max_entries: int,
        stale_after_ms: Optional[int] = None,
    ) -> int:
        """
        Best-effort GC, called opportunistically on inbound requests.

        1. Non-terminal sessions idle longer than stale_after_ms become error(generation_stalled)
        2. Sessions idle longer than max_age_ms are removed
        3. If still above max_entries, oldest updated_at are evicted first
        Returns the number of sessions removed.
        """
        now = self._clock()
        with self._lock:
            if stale_after_ms is not None:
                for session in self._sessions.values():
                    if not session.status.is_terminal and now - session.updated_at > stale_after_ms:
                        session.status = ChatStatus.error
                        session.error = STALLED_ERROR
                        self._touch(session)
                        logger.warning("Session stalled session_id=%s", session.session_id)

            expired = [sid for sid, s in self._sessions.items() if now - s.updated_at > max_age_ms]
            for sid in expired:
                del self._sessions[sid]

            overflow = len(self._sessions) - max_entries
            evicted: list[str] = []
            if overflow > 0:
                oldest = sorted(self._sessions.values(), key=lambda s: s.updated_at)
                evicted = [s.session_id for s in oldest[:overflow]]
                for sid in evicted:
                    del self._sessions[sid]

        removed = len(expired) + len(evicted)
        if removed:
            logger.info(
                "Session GC removed=%d expired=%d evicted=%d remaining=%d",
                removed, len(expired), len(evicted), len(self._sessions),
            )
        return removed

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _mutable(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        if session is None or session.status.is_terminal:
            return None
        return session

    def _touch(self, session: ChatSession) -> None:
        # Strictly increasing so pollers see every change even within one millisecond
        session.updated_at = max(session.updated_at + 1, self._clock())

    @staticmethod
    def _snapshot(session: ChatSession) -> ChatSessionSnapshot:
        return ChatSessionSnapshot(
            session_id=session.session_id,
            started_at=session.started_at,
            updated_at=session.updated_at,
            status=session.status,
            text=session.text,
            error=session.error,
            assessment_persisted=session.assessment_persisted,
        )
