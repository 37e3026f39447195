"""
persistence.py - idempotent commit of a validated assessment.

PersistenceGate.persist_if_valid() is the ONLY place where at-most-once commit
is guaranteed. Everything upstream (streaming, repair, duplicate finalisation)
may call it any number of times for the same session.

Order of checks:
  1. no token          -> silent skip (unauthenticated, not an error)
  2. extract+validate  -> silent skip on failure (already surfaced as session error)
  3. one-shot latch    -> skip if another caller already won it
  4. sanitize modules  -> exactly one backend write

SqlAssessmentBackend also keeps the chat transcript: open_turn() at send time
records the user message, record_reply() the assistant text once a generation
is done.
"""
import logging
from typing import Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillpath.agents.assessment_agent.sanitizer import sanitize_modules
from skillpath.agents.assessment_agent.schemas import AssessmentResult
from skillpath.agents.assessment_agent.validator import detect_assessment
from skillpath.sessions import SessionStore
from skillpath.store import add_message, get_or_create_conversation, owner_key_for, save_assessment

logger = logging.getLogger(__name__)


class AssessmentBackend(Protocol):
    async def store_assessment(self, skill_id: str, result: AssessmentResult, token: str) -> dict:
        ...


class TranscriptBackend(Protocol):
    async def open_turn(
        self,
        skill_id: str,
        locale: str,
        message: str,
        token: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        ...

    async def record_reply(self, conversation_id: str, content: str) -> None:
        ...


class SqlAssessmentBackend:
    """
    AssessmentBackend + TranscriptBackend writing through store.py.
    Every call runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def store_assessment(self, skill_id: str, result: AssessmentResult, token: str) -> dict:
        async with self._session_factory() as db:
            try:
                ids = await save_assessment(db, owner_key_for(token), skill_id, result)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return ids

    async def open_turn(
        self,
        skill_id: str,
        locale: str,
        message: str,
        token: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Resolve the caller's conversation and record the user message. Returns its id."""
        async with self._session_factory() as db:
            try:
                cid = await get_or_create_conversation(
                    db, owner_key_for(token), skill_id, locale, conversation_id,
                )
                await add_message(db, cid, "user", message)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return cid

    async def record_reply(self, conversation_id: str, content: str) -> None:
        async with self._session_factory() as db:
            try:
                await add_message(db, conversation_id, "assistant", content)
                await db.commit()
            except Exception:
                await db.rollback()
                raise


class PersistenceGate:
    def __init__(self, sessions: SessionStore, backend: AssessmentBackend) -> None:
        self._sessions = sessions
        self._backend = backend

    async def persist_if_valid(
        self,
        session_id: str,
        text: str,
        skill_id: str,
        token: Optional[str],
        allowlist: Optional[Sequence[str]] = None,
    ) -> bool:
        """
        Commit the assessment embedded in text at most once per session.
        Returns True only when this call performed the backend write.
        """
        if not token:
            logger.info("Skipping assessment persistence (no token) session_id=%s", session_id)
            return False

        result = detect_assessment(text)
        if result is None:
            logger.info("No valid assessment to persist session_id=%s", session_id)
            return False

        if not self._sessions.set_assessment_persisted(session_id):
            logger.info("Persistence lock not acquired session_id=%s", session_id)
            return False

        sanitized = result.model_copy(
            update={"learning_modules": sanitize_modules(result.learning_modules, allowlist)},
        )
        try:
            ids = await self._backend.store_assessment(skill_id, sanitized, token)
        except Exception:
            # Latch stays set: a failed write is not retried (at-most-once)
            logger.error(
                "Assessment persistence failed session_id=%s skill_id=%s",
                session_id, skill_id, exc_info=True,
            )
            return False

        logger.info(
            "Assessment persisted session_id=%s skill_id=%s level=%d ids=%s",
            session_id, skill_id, sanitized.level, ids,
        )
        return True
