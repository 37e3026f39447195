"""
store.py - Data access facade for assessments, learning paths and transcripts.

Provides a consistent, high-level API for persisting and retrieving domain objects.
The persistence backend and the routes use these functions; nothing else
touches SQLAlchemy directly.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM-only queries
  - Uses flush() (not commit()); the caller owns the transaction
  - Callers are identified by owner_key (SHA-256 of their token), never the raw token
  - Logs only ids and counts, never reasoning text, module or message content
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillpath.agents.assessment_agent.schemas import AssessmentResult
from skillpath.models.assessment import AssessmentORM
from skillpath.models.conversation import ConversationORM, MessageORM
from skillpath.models.learning_path import LearningPathORM

logger = logging.getLogger(__name__)

# A path the owner is still working with; everything else is history
CURRENT_PATH_STATUSES = ("active", "completed")


class ModuleNotInPathError(LookupError):
    """The module id is not part of the learning path."""


def owner_key_for(token: str) -> str:
    """Stable, non-reversible owner identifier derived from an auth token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------

async def save_assessment(
    db: AsyncSession,
    owner_key: str,
    skill_id: str,
    result: AssessmentResult,
) -> dict:
    """
    Insert an assessment, archive the owner's current path for this skill and
    insert the new active learning path.

    Returns {"assessment_id", "learning_path_id"}.
    """
    payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    assessment = AssessmentORM(
        owner_key=owner_key,
        skill_id=skill_id,
        level=result.level,
        confidence=result.confidence,
        reasoning=result.reasoning,
        raw_json=payload,
    )
    db.add(assessment)
    await db.flush()

    archived = await db.execute(
        update(LearningPathORM)
        .where(
            LearningPathORM.owner_key == owner_key,
            LearningPathORM.skill_id == skill_id,
            LearningPathORM.status.in_(CURRENT_PATH_STATUSES),
        )
        .values(status="archived", updated_at=_now())
    )

    path = LearningPathORM(
        owner_key=owner_key,
        skill_id=skill_id,
        assessment_id=assessment.id,
        modules=payload["learningModules"],
        status="active",
        completed_module_ids=[],
    )
    db.add(path)
    await db.flush()
    logger.info(
        "Saved assessment assessment_id=%s skill_id=%s level=%d modules=%d archived_paths=%d",
        assessment.id, skill_id, result.level, len(result.learning_modules), archived.rowcount or 0,
    )
    return {"assessment_id": assessment.id, "learning_path_id": path.id}


async def get_latest_assessment(
    db: AsyncSession,
    owner_key: str,
    skill_id: str,
) -> Optional[dict]:
    """
    Most recent assessment for (owner, skill), or None.
    Returns the stored camelCase payload plus id and created_at.
    """
    result = await db.execute(
        select(AssessmentORM)
        .where(AssessmentORM.owner_key == owner_key, AssessmentORM.skill_id == skill_id)
        .order_by(AssessmentORM.created_at.desc())
        .limit(1)
    )
    orm = result.scalar_one_or_none()
    if orm is None:
        return None
    return {
        "assessmentId": orm.id,
        "skillId": orm.skill_id,
        "createdAt": orm.created_at.isoformat(),
        "result": orm.raw_json,
    }


# ---------------------------------------------------------------------------
# Learning paths
# ---------------------------------------------------------------------------

def learning_path_dict(orm: LearningPathORM) -> dict:
    return {
        "learningPathId": orm.id,
        "assessmentId": orm.assessment_id,
        "skillId": orm.skill_id,
        "status": orm.status,
        "modules": orm.modules,
        "completedModuleIds": list(orm.completed_module_ids or []),
    }


async def _latest_current_path(
    db: AsyncSession,
    owner_key: str,
    skill_id: str,
) -> Optional[LearningPathORM]:
    result = await db.execute(
        select(LearningPathORM)
        .where(
            LearningPathORM.owner_key == owner_key,
            LearningPathORM.skill_id == skill_id,
            LearningPathORM.status.in_(CURRENT_PATH_STATUSES),
        )
        .order_by(LearningPathORM.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_current_learning_path(
    db: AsyncSession,
    owner_key: str,
    skill_id: str,
) -> Optional[dict]:
    """The owner's active (or fully completed) learning path for the skill, or None."""
    orm = await _latest_current_path(db, owner_key, skill_id)
    return learning_path_dict(orm) if orm is not None else None


async def resolve_learning_path(
    db: AsyncSession,
    owner_key: str,
    learning_path_id: Optional[str] = None,
    skill_id: Optional[str] = None,
) -> Optional[LearningPathORM]:
    """
    Find a path by explicit id, or the current path for skill_id.
    A path owned by someone else is reported as missing.
    """
    if learning_path_id:
        orm = await db.get(LearningPathORM, learning_path_id)
        if orm is None or orm.owner_key != owner_key:
            return None
        return orm
    if skill_id:
        return await _latest_current_path(db, owner_key, skill_id)
    return None


def _require_module(path: LearningPathORM, module_id: str) -> None:
    if not any(isinstance(m, dict) and m.get("id") == module_id for m in path.modules):
        raise ModuleNotInPathError(module_id)


async def complete_module(db: AsyncSession, path: LearningPathORM, module_id: str) -> dict:
    """
    Mark module_id completed (idempotent). Completing the last open module
    moves the path to 'completed'. Paths that are not active are left as-is.
    """
    if path.status != "active":
        return learning_path_dict(path)
    _require_module(path, module_id)

    completed = list(path.completed_module_ids or [])
    if module_id not in completed:
        completed.append(module_id)
    path.completed_module_ids = completed
    if all(m.get("id") in completed for m in path.modules if isinstance(m, dict)):
        path.status = "completed"
    path.updated_at = _now()
    await db.flush()
    logger.info(
        "Module completed learning_path_id=%s completed=%d/%d status=%s",
        path.id, len(completed), len(path.modules), path.status,
    )
    return learning_path_dict(path)


async def incomplete_module(db: AsyncSession, path: LearningPathORM, module_id: str) -> dict:
    """
    Remove module_id from the completed set (idempotent) and re-open a
    completed path. Archived paths are read-only.
    """
    if path.status == "archived":
        return learning_path_dict(path)
    _require_module(path, module_id)

    path.completed_module_ids = [m for m in path.completed_module_ids or [] if m != module_id]
    path.status = "active"
    path.updated_at = _now()
    await db.flush()
    logger.info("Module reopened learning_path_id=%s", path.id)
    return learning_path_dict(path)


async def unenroll(db: AsyncSession, path: LearningPathORM) -> dict:
    """Archive the path; the owner has no current path for the skill afterwards."""
    if path.status != "archived":
        path.status = "archived"
        path.updated_at = _now()
        await db.flush()
        logger.info("Learning path archived learning_path_id=%s", path.id)
    return learning_path_dict(path)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

async def get_or_create_conversation(
    db: AsyncSession,
    owner_key: str,
    skill_id: str,
    language: str,
    conversation_id: Optional[str] = None,
) -> str:
    """
    Return the conversation to append this turn to.

    An explicit conversation_id is honoured only when it is the owner's active
    conversation for the same skill; otherwise the latest active one is reused,
    and a new one is created when none exists.
    """
    conversation: Optional[ConversationORM] = None
    if conversation_id:
        candidate = await db.get(ConversationORM, conversation_id)
        if (
            candidate is not None
            and candidate.owner_key == owner_key
            and candidate.skill_id == skill_id
            and candidate.status == "active"
        ):
            conversation = candidate
        else:
            logger.info("Ignoring unusable conversation id conversation_id=%s", conversation_id)

    if conversation is None:
        result = await db.execute(
            select(ConversationORM)
            .where(
                ConversationORM.owner_key == owner_key,
                ConversationORM.skill_id == skill_id,
                ConversationORM.status == "active",
            )
            .order_by(ConversationORM.created_at.desc())
            .limit(1)
        )
        conversation = result.scalar_one_or_none()

    if conversation is None:
        conversation = ConversationORM(owner_key=owner_key, skill_id=skill_id, language=language)
        db.add(conversation)
        await db.flush()
        logger.info("Conversation created conversation_id=%s skill_id=%s", conversation.id, skill_id)
    else:
        conversation.last_message_at = _now()
    return conversation.id


async def add_message(
    db: AsyncSession,
    conversation_id: str,
    role: Literal["user", "assistant"],
    content: str,
) -> dict:
    """
    Append one transcript entry. Assistant replies are numbered 1, 2, ... per
    conversation. Returns {"messageId", "questionNumber"}.
    """
    question_number: Optional[int] = None
    if role == "assistant":
        count = await db.execute(
            select(func.count())
            .select_from(MessageORM)
            .where(MessageORM.conversation_id == conversation_id, MessageORM.role == "assistant")
        )
        question_number = count.scalar_one() + 1

    now = _now()
    message = MessageORM(
        conversation_id=conversation_id,
        role=role,
        content=content,
        question_number=question_number,
        created_at=now,
    )
    db.add(message)
    await db.execute(
        update(ConversationORM)
        .where(ConversationORM.id == conversation_id)
        .values(last_message_at=now, updated_at=now)
    )
    await db.flush()
    logger.info(
        "Message added conversation_id=%s role=%s question_number=%s",
        conversation_id, role, question_number,
    )
    return {"messageId": message.id, "questionNumber": question_number}


async def list_messages(
    db: AsyncSession,
    owner_key: str,
    conversation_id: str,
) -> Optional[list[dict]]:
    """Transcript in insertion order, or None when the conversation is not the owner's."""
    conversation = await db.get(ConversationORM, conversation_id)
    if conversation is None or conversation.owner_key != owner_key:
        return None
    result = await db.execute(
        select(MessageORM)
        .where(MessageORM.conversation_id == conversation_id)
        .order_by(MessageORM.created_at, MessageORM.question_number)
    )
    return [
        {
            "messageId": m.id,
            "role": m.role,
            "content": m.content,
            "questionNumber": m.question_number,
            "createdAt": m.created_at.isoformat(),
        }
        for m in result.scalars().all()
    ]
