"""
routes.py - assessment chat HTTP endpoints.

POST /api/chat/send                          - rate limit -> parse body -> transcript turn -> spawn generation
GET  /api/chat/status                        - rate limit -> snapshot -> weak ETag / 304 -> {sessionId, status, text, updatedAt, error}
GET  /api/assessments/latest                 - bearer token -> latest committed assessment + current learning path
POST /api/learning-paths/complete-module     - bearer token -> mark a module completed
POST /api/learning-paths/incomplete-module   - bearer token -> un-mark a module
POST /api/learning-paths/unenroll            - bearer token -> archive the path
GET  /api/conversations/{id}/messages        - bearer token -> transcript of one conversation

Both chat endpoints run session GC opportunistically (no background timer).
app.state resources (sessions, rate_limiter, runner, transcript, catalogue,
session_factory) are set in main.py lifespan.
"""
import json
import logging
from typing import Optional, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillpath.agents.assessment_agent.orchestrator import GenerationJob
from skillpath.agents.assessment_agent.prompts import (
    build_system_prompt,
    build_user_messages,
    resolve_locale,
)
from skillpath.agents.assessment_agent.schemas import (
    ModuleProgressRequest,
    PathTargetRequest,
    SendRequest,
    SendResponse,
    StatusResponse,
)
from skillpath.config import settings
from skillpath.database import get_db
from skillpath.models.learning_path import LearningPathORM
from skillpath.rate_limit import client_key
from skillpath.sessions import ChatSessionSnapshot
from skillpath.store import (
    ModuleNotInPathError,
    complete_module,
    get_current_learning_path,
    get_latest_assessment,
    incomplete_module,
    list_messages,
    owner_key_for,
    resolve_learning_path,
    unenroll,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["Assessment Agent"])

_NO_STORE = "no-store"

BodyT = TypeVar("BodyT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _require_token(request: Request) -> str:
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(status_code=401, detail="Bearer token required")
    return token


def _collect_garbage(request: Request) -> None:
    state = request.app.state
    state.sessions.cleanup(
        settings.session_max_age_ms,
        settings.session_max_entries,
        settings.session_stale_after_ms,
    )
    state.rate_limiter.prune(max(settings.send_rate_window_ms, settings.status_rate_window_ms))


def _enforce_rate_limit(request: Request, action: str, limit: int, window_ms: int) -> None:
    key = f"{client_key(request)}:{action}"
    decision = request.app.state.rate_limiter.check(key, limit, window_ms)
    if not decision.allowed:
        retry_after = decision.retry_after_seconds()
        logger.warning("Rate limited action=%s retry_after=%ds", action, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please slow down.",
            headers={"Retry-After": str(retry_after)},
        )


def make_etag(snapshot: ChatSessionSnapshot) -> str:
    """Weak validator: changes whenever updatedAt, status or text length change."""
    return f'W/"{snapshot.updated_at}-{snapshot.status.value}-{len(snapshot.text)}"'


def _etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    candidates = [c.strip() for c in if_none_match.split(",")]
    return "*" in candidates or etag in candidates


async def _parse_body(request: Request, model: Type[BodyT]) -> BodyT:
    """Explicit body parsing so malformed input is a 400, not FastAPI's 422."""
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) or "body" for e in exc.errors())
        raise HTTPException(status_code=400, detail=f"Invalid request body: {fields}")


async def _open_turn(request: Request, body: SendRequest, locale: str, token: str) -> Optional[str]:
    """Record the user message; a database failure must not block generation."""
    try:
        return await request.app.state.transcript.open_turn(
            body.skill_id, locale, body.message, token, body.conversation_id,
        )
    except SQLAlchemyError:
        logger.error("Transcript turn not recorded skill_id=%s", body.skill_id, exc_info=True)
        return None


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@router.post("/chat/send")
async def send_endpoint(request: Request) -> JSONResponse:
    """
    Start one assessment generation turn and return immediately.

    Flow:
      1. Session GC + per-caller rate limit (429 with Retry-After)
      2. Parse {skillId, message, conversationId?} explicitly (400 on malformed JSON or schema failure)
      3. Build the locale-specific system prompt and resource allowlist
      4. With a bearer token: resolve the conversation and record the user message
      5. Create a queued session and spawn the background generation task
      6. Return {sessionId, conversationId}; the client polls /api/chat/status
    """
    _collect_garbage(request)
    _enforce_rate_limit(request, "send", settings.send_rate_limit, settings.send_rate_window_ms)
    body = await _parse_body(request, SendRequest)

    state = request.app.state
    locale = resolve_locale(request.headers.get("x-locale"))
    system_prompt, allowed_urls = build_system_prompt(
        body.skill_id, locale, state.catalogue, settings.resource_url_allowlist_list,
    )
    token = _bearer_token(request)
    conversation_id = await _open_turn(request, body, locale, token) if token else None

    session = state.sessions.create()
    state.runner.spawn(
        GenerationJob(
            session_id=session.session_id,
            skill_id=body.skill_id,
            system_prompt=system_prompt,
            messages=build_user_messages(body.message),
            locale=locale,
            token=token,
            allowed_urls=allowed_urls,
            conversation_id=conversation_id,
        )
    )
    logger.info(
        "Generation queued session_id=%s skill_id=%s locale=%s conversation_id=%s",
        session.session_id, body.skill_id, locale, conversation_id,
    )
    response = SendResponse(session_id=session.session_id, conversation_id=conversation_id)
    return JSONResponse(
        content=response.model_dump(by_alias=True),
        headers={"Cache-Control": _NO_STORE},
    )


@router.get("/chat/status")
async def status_endpoint(
    request: Request,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
) -> Response:
    """
    Poll one session.

    Returns 304 (empty body) when If-None-Match carries the current ETag,
    404 when the session is unknown or was evicted by GC.
    """
    _collect_garbage(request)
    _enforce_rate_limit(request, "status", settings.status_rate_limit, settings.status_rate_window_ms)
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId query parameter is required")

    snapshot = request.app.state.sessions.get(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found or expired")

    etag = make_etag(snapshot)
    headers = {"ETag": etag, "Cache-Control": _NO_STORE}
    if _etag_matches(request.headers.get("if-none-match"), etag):
        return Response(status_code=304, headers=headers)

    body = StatusResponse(
        session_id=snapshot.session_id,
        status=snapshot.status,
        text=snapshot.text,
        updated_at=snapshot.updated_at,
        error=snapshot.error,
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True), headers=headers)


# ---------------------------------------------------------------------------
# Committed assessments
# ---------------------------------------------------------------------------

@router.get("/assessments/latest")
async def latest_assessment_endpoint(
    request: Request,
    skill_id: Optional[str] = Query(default=None, alias="skillId"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Latest committed assessment for the caller and skill, with the current learning path.
    The caller is identified by the bearer token used when the assessment was sent.
    """
    token = _require_token(request)
    if not skill_id:
        raise HTTPException(status_code=400, detail="skillId query parameter is required")

    owner_key = owner_key_for(token)
    assessment = await get_latest_assessment(db, owner_key, skill_id)
    if assessment is None:
        raise HTTPException(status_code=404, detail="No assessment found for this skill")
    learning_path = await get_current_learning_path(db, owner_key, skill_id)
    return {"assessment": assessment, "learningPath": learning_path}


# ---------------------------------------------------------------------------
# Learning-path progress
# ---------------------------------------------------------------------------

async def _target_path(db: AsyncSession, token: str, body: PathTargetRequest) -> LearningPathORM:
    path = await resolve_learning_path(
        db, owner_key_for(token), learning_path_id=body.learning_path_id, skill_id=body.skill_id,
    )
    if path is None:
        raise HTTPException(status_code=404, detail="Learning path not found")
    return path


@router.post("/learning-paths/complete-module")
async def complete_module_endpoint(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    """
    Mark one module completed. Completing the last open module completes the path.
    Body: {learningPathId? | skillId?, moduleId}
    """
    token = _require_token(request)
    body = await _parse_body(request, ModuleProgressRequest)
    path = await _target_path(db, token, body)
    try:
        progress = await complete_module(db, path, body.module_id)
    except ModuleNotInPathError:
        raise HTTPException(status_code=404, detail="Module not found in path")
    await db.commit()
    return progress


@router.post("/learning-paths/incomplete-module")
async def incomplete_module_endpoint(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    """Un-mark one module; a completed path becomes active again."""
    token = _require_token(request)
    body = await _parse_body(request, ModuleProgressRequest)
    path = await _target_path(db, token, body)
    try:
        progress = await incomplete_module(db, path, body.module_id)
    except ModuleNotInPathError:
        raise HTTPException(status_code=404, detail="Module not found in path")
    await db.commit()
    return progress


@router.post("/learning-paths/unenroll")
async def unenroll_endpoint(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    """Archive the path. Body: {learningPathId? | skillId?}"""
    token = _require_token(request)
    body = await _parse_body(request, PathTargetRequest)
    path = await _target_path(db, token, body)
    progress = await unenroll(db, path)
    await db.commit()
    return progress


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

@router.get("/conversations/{conversation_id}/messages")
async def conversation_messages_endpoint(
    conversation_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    token = _require_token(request)
    messages = await list_messages(db, owner_key_for(token), conversation_id)
    if messages is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversationId": conversation_id, "messages": messages}
