"""
orchestrator.py - drives one assessment generation to a terminal session state.

Flow for a single session:
  1. set_running
  2. stream fragments -> append_partial, try detect_assessment on the buffer after
     every fragment; first success -> set_done and close the stream early
  3. stream ended without a valid assessment (or failed) -> ONE repair call
     (non-streaming) demanding a single fenced JSON block
  4. repair output validates (directly or after coerce_assessment) -> append the
     canonical fenced JSON to the session text, set_done
  5. otherwise -> set_error; nothing is persisted
  6. after done -> assistant reply added to the conversation transcript (when the
     turn has one), then PersistenceGate.persist_if_valid (idempotent) on the text
     that validated: the stream buffer, or only the canonical block after a repair

Early close assumes a valid assessment is final: text streamed after it is
trailing prose and is discarded.

Nothing raises out of run_generation(): it runs as a background task with no
HTTP response to report to, so every failure becomes session error state.
"""
import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import List, Optional

from skillpath.agents.assessment_agent.llm_service import GenerationError, TextGenerator
from skillpath.agents.assessment_agent.persistence import PersistenceGate, TranscriptBackend
from skillpath.agents.assessment_agent.prompts import (
    Locale,
    build_repair_messages,
    repair_system_prompt,
)
from skillpath.agents.assessment_agent.validator import (
    coerce_assessment,
    detect_assessment,
    iter_json_candidates,
    normalize_candidate,
)
from skillpath.sessions import SessionStore

logger = logging.getLogger(__name__)

REPAIR_FAILED_ERROR = "assessment_repair_failed"
EMPTY_RESPONSE_ERROR = "empty_response"
CANCELLED_ERROR = "generation_cancelled"
INTERNAL_ERROR = "generation_failed"


@dataclass
class GenerationJob:
    """Everything one background generation needs, captured at send time."""
    session_id: str
    skill_id: str
    system_prompt: str
    messages: List[dict]
    locale: Locale = "en"
    token: Optional[str] = None
    allowed_urls: List[str] = field(default_factory=list)
    conversation_id: Optional[str] = None


async def _stream_phase(
    sessions: SessionStore,
    generator: TextGenerator,
    job: GenerationJob,
) -> tuple[str, bool]:
    """Return (accumulated_text, validated)."""
    buffer = ""
    chunks = 0
    try:
        async with aclosing(generator.stream(job.system_prompt, job.messages)) as stream:
            async for fragment in stream:
                if not fragment:
                    continue
                chunks += 1
                buffer += fragment
                sessions.append_partial(job.session_id, fragment)
                if "{" in fragment or "}" in fragment or "```" in fragment:
                    if detect_assessment(buffer) is not None:
                        logger.info(
                            "Assessment validated mid-stream session_id=%s chunks=%d",
                            job.session_id, chunks,
                        )
                        return buffer, True
    except GenerationError as exc:
        logger.warning(
            "Stream failed session_id=%s chunks=%d error=%s",
            job.session_id, chunks, type(exc.__cause__ or exc).__name__,
        )
    if buffer and detect_assessment(buffer) is not None:
        return buffer, True
    logger.info("Stream finished session_id=%s chunks=%d text_len=%d", job.session_id, chunks, len(buffer))
    return buffer, False


async def _repair_phase(
    sessions: SessionStore,
    generator: TextGenerator,
    job: GenerationJob,
    previous_text: str,
) -> Optional[str]:
    """One repair call. Appends the canonical fenced JSON and returns it, or None."""
    logger.info("Starting repair call session_id=%s", job.session_id)
    try:
        repaired_text = await generator.complete(
            repair_system_prompt(job.system_prompt, job.locale),
            build_repair_messages(job.messages, previous_text, job.locale),
            repair=True,
        )
    except GenerationError as exc:
        logger.warning(
            "Repair call failed session_id=%s error=%s",
            job.session_id, type(exc.__cause__ or exc).__name__,
        )
        return None

    result = detect_assessment(repaired_text)
    if result is None:
        for candidate in iter_json_candidates(repaired_text):
            result = coerce_assessment(normalize_candidate(candidate))
            if result is not None:
                logger.info("Repair output coerced into a valid assessment session_id=%s", job.session_id)
                break
    if result is None:
        logger.warning("Repair output failed validation session_id=%s", job.session_id)
        return None

    payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    block = f"```json\n{json.dumps(payload, ensure_ascii=False, indent=2)}\n```"
    sessions.append_partial(job.session_id, f"\n\n{block}")
    return block


async def _record_reply(transcript: TranscriptBackend, job: GenerationJob, text: str) -> None:
    """Transcript failures are logged only; the assessment is still persisted."""
    try:
        await transcript.record_reply(job.conversation_id, text)
    except Exception:
        logger.error(
            "Transcript write failed session_id=%s conversation_id=%s",
            job.session_id, job.conversation_id, exc_info=True,
        )


async def run_generation(
    sessions: SessionStore,
    generator: TextGenerator,
    gate: PersistenceGate,
    job: GenerationJob,
    transcript: Optional[TranscriptBackend] = None,
) -> None:
    """Leave job.session_id in done or error. Never raises except CancelledError."""
    sid = job.session_id
    try:
        sessions.set_running(sid)
        text, validated = await _stream_phase(sessions, generator, job)

        # A cut-off stream can leave an open fence or brace in the session text,
        # so after a repair only the canonical block goes to persistence
        assessment_text: Optional[str] = text if validated else None
        if assessment_text is None:
            assessment_text = await _repair_phase(sessions, generator, job, text)

        if assessment_text is None:
            reason = REPAIR_FAILED_ERROR if text.strip() else EMPTY_RESPONSE_ERROR
            logger.warning("Generation unrecoverable session_id=%s reason=%s", sid, reason)
            sessions.set_error(sid, reason)
            return

        sessions.set_done(sid)
        snapshot = sessions.get(sid)
        if snapshot is None:
            logger.info("Session evicted before persistence session_id=%s", sid)
            return
        if transcript is not None and job.conversation_id:
            await _record_reply(transcript, job, snapshot.text)
        await gate.persist_if_valid(
            sid, assessment_text, job.skill_id, job.token, job.allowed_urls,
        )
    except asyncio.CancelledError:
        sessions.set_error(sid, CANCELLED_ERROR)
        raise
    except Exception:
        logger.error("Generation task crashed session_id=%s", sid, exc_info=True)
        sessions.set_error(sid, INTERNAL_ERROR)


class GenerationRunner:
    """
    Owns fire-and-forget generation tasks, one per session id.

    Strong references are kept until each task completes (the event loop only
    holds weak ones). shutdown() cancels whatever is still running.
    """

    def __init__(
        self,
        sessions: SessionStore,
        generator: TextGenerator,
        gate: PersistenceGate,
        transcript: Optional[TranscriptBackend] = None,
    ) -> None:
        self._sessions = sessions
        self._generator = generator
        self._gate = gate
        self._transcript = transcript
        self._tasks: dict[str, asyncio.Task] = {}

    def spawn(self, job: GenerationJob) -> asyncio.Task:
        if job.session_id in self._tasks:
            raise ValueError(f"generation already running for session {job.session_id}")
        task = asyncio.create_task(
            run_generation(self._sessions, self._generator, self._gate, job, self._transcript),
            name=f"generation:{job.session_id}",
        )
        self._tasks[job.session_id] = task
        task.add_done_callback(lambda _t, sid=job.session_id: self._tasks.pop(sid, None))
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Await every outstanding task (tests and graceful shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d outstanding generation task(s)", len(tasks))
        self._tasks.clear()
