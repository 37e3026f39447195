"""
llm_service.py - generative-text capability for the assessment pipeline.

Components:
  TextGenerator       - protocol: stream() fragments, complete() one blob
  GenerationError     - transport failure after retries (caught by the orchestrator)
  MistralGenerator    - mistralai SDK adapter, semaphore-bounded, tenacity retries
  SimulatedGenerator  - canned reply used when MISTRAL_API_KEY is empty

No asyncio.Semaphore at module level - it is created in main.py lifespan and
passed in (avoids RuntimeError: no running event loop at import).

No HTTPException anywhere - this is pure business logic, HTTP layer is routes.py.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional, Protocol

import httpx
from mistralai import Mistral
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}
_TRANSIENT_MARKERS = ("timeout", "timed out", "rate limit", "too many requests", "temporarily unavailable")


class GenerationError(RuntimeError):
    """The generator could not be reached or failed mid-response."""


class TextGenerator(Protocol):
    async def stream(self, system_prompt: str, messages: List[dict]) -> AsyncIterator[str]:
        ...

    async def complete(self, system_prompt: str, messages: List[dict], *, repair: bool = False) -> str:
        ...


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, connection drops, 429 and 5xx are worth retrying; nothing else is."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in _TRANSIENT_STATUS
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


# ---------------------------------------------------------------------------
# Mistral adapter
# ---------------------------------------------------------------------------

class MistralGenerator:
    """
    Streaming + one-shot chat completions via the Mistral SDK.

    Retries apply to opening a stream and to complete(). Once fragments have been
    yielded a mid-stream failure is NOT retried (it would duplicate text); it is
    raised as GenerationError and the orchestrator moves on to the repair call.
    """

    def __init__(
        self,
        client: Mistral,
        semaphore: asyncio.Semaphore,
        *,
        model: str,
        repair_model: str,
        temperature: float = 0.3,
        repair_temperature: float = 0.1,
        max_tokens: int = 2048,
        repair_max_tokens: int = 1024,
        attempts: int = 3,
        repair_attempts: int = 2,
        max_wait_seconds: float = 4.0,
    ) -> None:
        self._client = client
        self._semaphore = semaphore
        self.model = model
        self.repair_model = repair_model
        self._temperature = temperature
        self._repair_temperature = repair_temperature
        self._max_tokens = max_tokens
        self._repair_max_tokens = repair_max_tokens
        self._attempts = max(1, attempts)
        self._repair_attempts = max(1, repair_attempts)
        self._max_wait = max_wait_seconds

    def _retrying(self, attempts: int) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(multiplier=0.25, max=self._max_wait),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )

    @staticmethod
    def _payload(system_prompt: str, messages: List[dict]) -> list[dict]:
        return [{"role": "system", "content": system_prompt}, *messages]

    async def stream(self, system_prompt: str, messages: List[dict]) -> AsyncIterator[str]:
        logger.info("Opening Mistral stream model=%s messages=%d", self.model, len(messages))
        async with self._semaphore:
            try:
                response = None
                async for attempt in self._retrying(self._attempts):
                    with attempt:
                        response = await self._client.chat.stream_async(
                            model=self.model,
                            messages=self._payload(system_prompt, messages),
                            temperature=self._temperature,
                            max_tokens=self._max_tokens,
                        )
                # Closing the event stream releases the pooled HTTP connection,
                # including when the consumer stops early
                async with response:
                    async for event in response:
                        choices = event.data.choices or []
                        if not choices:
                            continue
                        content = choices[0].delta.content
                        if isinstance(content, str) and content:
                            yield content
            except Exception as exc:
                raise GenerationError(f"stream failed: {type(exc).__name__}: {exc}") from exc

    async def complete(self, system_prompt: str, messages: List[dict], *, repair: bool = False) -> str:
        model = self.repair_model if repair else self.model
        logger.info("Calling Mistral complete model=%s repair=%s", model, repair)
        async with self._semaphore:
            try:
                async for attempt in self._retrying(self._repair_attempts if repair else self._attempts):
                    with attempt:
                        response = await self._client.chat.complete_async(
                            model=model,
                            messages=self._payload(system_prompt, messages),
                            temperature=self._repair_temperature if repair else self._temperature,
                            max_tokens=self._repair_max_tokens if repair else self._max_tokens,
                        )
            except Exception as exc:
                raise GenerationError(f"complete failed: {type(exc).__name__}: {exc}") from exc

        content = response.choices[0].message.content if response.choices else ""
        text = content if isinstance(content, str) else ""
        logger.info("Mistral response received model=%s text_len=%d", model, len(text))
        return text


# ---------------------------------------------------------------------------
# Simulated generator (no API key)
# ---------------------------------------------------------------------------

_SIMULATED_ASSESSMENT = {
    "level": 3,
    "confidence": 0.7,
    "reasoning": "Simulated assessment: no generator API key is configured.",
    "learningModules": [
        {"id": "module-1", "title": "Core concepts review", "type": "article", "duration": "10 min"},
        {"id": "module-2", "title": "Guided walkthrough", "type": "video", "duration": "20 min"},
        {"id": "module-3", "title": "Check your understanding", "type": "quiz", "duration": "15 min"},
        {"id": "module-4", "title": "Small practice project", "type": "project", "duration": "1 hour"},
    ],
}


class SimulatedGenerator:
    """Offline stand-in that exercises the full pipeline with a valid assessment."""

    def __init__(self, chunk_delay_seconds: float = 0.12) -> None:
        self._delay = chunk_delay_seconds

    def _fenced(self) -> str:
        return f"```json\n{json.dumps(_SIMULATED_ASSESSMENT, indent=2)}\n```"

    async def stream(self, system_prompt: str, messages: List[dict]) -> AsyncIterator[str]:
        chunks = [
            "## Assessment\n\n",
            "- Based on your answers you have a working foundation.\n",
            "- The modules below close the remaining gaps.\n\n",
            self._fenced(),
        ]
        for chunk in chunks:
            await asyncio.sleep(self._delay)
            yield chunk

    async def complete(self, system_prompt: str, messages: List[dict], *, repair: bool = False) -> str:
        return self._fenced()


def build_generator(
    api_key: str,
    semaphore: asyncio.Semaphore,
    client: Optional[Mistral] = None,
    **options,
) -> TextGenerator:
    """MistralGenerator when a key (or client) is available, else SimulatedGenerator."""
    if not api_key and client is None:
        logger.warning("MISTRAL_API_KEY is empty - using SimulatedGenerator")
        return SimulatedGenerator()
    return MistralGenerator(client or Mistral(api_key=api_key), semaphore, **options)
