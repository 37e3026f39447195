"""
poller.py - async client for the assessment chat endpoints.

ChatStatusPoller.send_message() starts a turn; start_polling() runs a cancellable
asyncio.Task that polls /api/chat/status with If-None-Match and adaptive delays
until the session reaches done/error or three consecutive requests fail.

Delay policy (additive, never exponential, so an interactive chat stays snappy):
  304 Not Modified          -> +0.15 s, ceiling 2 s
  running/partial, progress -> 0.5 s
  running/partial, no change-> +0.25 s, ceiling 2 s
  queued                    -> 1 s
  transport / HTTP error    -> +0.5 s, ceiling 4 s
Every scheduled delay gets +/-20% jitter and a 0.3 s floor.

on_error(handle, reason) receives the server's session error (for example
assessment_repair_failed), or status_unreachable after three failed polls.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional

import httpx

logger = logging.getLogger(__name__)

ConnectionState = Optional[Literal["connecting", "connected", "reconnecting", "disconnected"]]

MAX_CONSECUTIVE_ERRORS = 3
# on_error reason when the status endpoint itself is unreachable
UNREACHABLE_ERROR = "status_unreachable"


@dataclass(frozen=True)
class PollProgress:
    handle: str
    text: str
    status: str
    progressed: bool


@dataclass
class PollPolicy:
    initial: float = 0.75
    not_modified_step: float = 0.15
    progress_delay: float = 0.5
    idle_step: float = 0.25
    queued_delay: float = 1.0
    error_step: float = 0.5
    ceiling: float = 2.0
    error_ceiling: float = 4.0
    floor: float = 0.3
    jitter: float = 0.2

    def after_not_modified(self, delay: float) -> float:
        return min(self.ceiling, delay + self.not_modified_step)

    def after_body(self, delay: float, status: str, progressed: bool) -> float:
        if status in ("running", "partial"):
            return self.progress_delay if progressed else min(self.ceiling, delay + self.idle_step)
        if status == "queued":
            return self.queued_delay
        return delay

    def after_error(self, delay: float) -> float:
        return min(self.error_ceiling, delay + self.error_step)

    def jittered(self, delay: float, rng: random.Random) -> float:
        factor = 1 + rng.uniform(-self.jitter, self.jitter)
        return max(self.floor, delay * factor)


class ChatStatusPoller:
    """
    One poller per chat view. Only one polling loop is active at a time:
    start_polling() stops the previous loop first.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        policy: Optional[PollPolicy] = None,
        on_progress: Optional[Callable[[PollProgress], None]] = None,
        on_done: Optional[Callable[[str, str], None]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.policy = policy or PollPolicy()
        self._on_progress = on_progress
        self._on_done = on_done
        self._on_error = on_error
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.connection_state: ConnectionState = None

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send_message(
        self,
        skill_id: str,
        message: str,
        locale: Literal["ar", "en"] = "en",
        token: Optional[str] = None,
    ) -> Optional[str]:
        """Returns the new session id, or None on any transport error or non-2xx."""
        headers = {"x-locale": locale, "cache-control": "no-store"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.post(
                "/api/chat/send",
                json={"skillId": skill_id, "message": message},
                headers=headers,
            )
            if not response.is_success:
                logger.info("Send rejected status=%d", response.status_code)
                return None
            session_id = response.json().get("sessionId")
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("Send failed error=%s", type(exc).__name__)
            return None
        return session_id if isinstance(session_id, str) and session_id else None

    # ------------------------------------------------------------------
    # Poll lifecycle
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_polling(self, session_id: str, handle: str) -> asyncio.Task:
        self.stop_polling()
        self.connection_state = "connecting"
        self._task = asyncio.create_task(self._loop(session_id, handle), name=f"poll:{session_id}")
        return self._task

    def stop_polling(self) -> None:
        """Cancel the in-flight request and pending delay. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self.connection_state = None

    async def wait(self) -> None:
        """Wait for the current loop to finish (no-op when idle)."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _loop(self, session_id: str, handle: str) -> None:
        delay = self.policy.initial
        consecutive_errors = 0
        last_updated_at = 0
        etag: Optional[str] = None

        while True:
            headers = {"cache-control": "no-store"}
            if etag:
                headers["if-none-match"] = etag
            try:
                response = await self._client.get(
                    "/api/chat/status", params={"sessionId": session_id}, headers=headers,
                )
                if response.status_code == 304:
                    consecutive_errors = 0
                    self.connection_state = "connected"
                    delay = self.policy.after_not_modified(delay)
                    await self._sleep(self.policy.jittered(delay, self._rng))
                    continue
                response.raise_for_status()
                data = response.json()
                status = str(data["status"])
                text = str(data.get("text", ""))
                updated_at = int(data.get("updatedAt", 0))
                error = data.get("error") or None
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                consecutive_errors += 1
                delay = self.policy.after_error(delay)
                logger.info(
                    "Status poll failed session_id=%s errors=%d error=%s",
                    session_id, consecutive_errors, type(exc).__name__,
                )
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    self.connection_state = "disconnected"
                    if self._on_error:
                        self._on_error(handle, UNREACHABLE_ERROR)
                    return
                self.connection_state = "reconnecting"
                await self._sleep(self.policy.jittered(delay, self._rng))
                continue

            consecutive_errors = 0
            etag = response.headers.get("etag") or etag
            self.connection_state = "connected"
            progressed = updated_at > last_updated_at
            last_updated_at = max(last_updated_at, updated_at)
            delay = self.policy.after_body(delay, status, progressed)

            if self._on_progress:
                self._on_progress(PollProgress(handle, text, status, progressed))

            if status == "done":
                self.connection_state = None
                if self._on_done:
                    self._on_done(handle, text)
                return
            if status == "error":
                self.connection_state = "disconnected"
                if self._on_error:
                    self._on_error(handle, error or "generation_failed")
                return

            await self._sleep(self.policy.jittered(delay, self._rng))
