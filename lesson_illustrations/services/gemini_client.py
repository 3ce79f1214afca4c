"""
Gemini client factory plus the pacing and retry helpers shared by every model call.
"""
import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from google import genai
from google.genai import types

from lesson_illustrations.config import config

logger = logging.getLogger(__name__)
T = TypeVar("T")

RETRY_MAX_DELAY_SECONDS = 8.0
RETRY_JITTER_SECONDS = 0.6
MAX_RETRY_CAP = 6


class GeminiNotConfiguredError(RuntimeError):
    """Raised when a model call is attempted without an API key."""


def is_rate_limited_error(error: Exception) -> bool:
    """True for provider throttling / overload errors worth retrying."""
    status_code = getattr(error, "status_code", None) or getattr(error, "code", None)
    if status_code in (429, 503):
        return True
    text = str(error).lower()
    return (
        "429" in text
        or "503" in text
        or "resource_exhausted" in text
        or "too many requests" in text
        or "rate limit" in text
        or "overloaded" in text
    )


def _retry_delay_seconds(attempt: int) -> float:
    backoff = min(RETRY_MAX_DELAY_SECONDS, config.retry_backoff_seconds * (2 ** (attempt - 1)))
    return backoff + random.uniform(0.0, RETRY_JITTER_SECONDS)


async def generate_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    max_retries: Optional[int] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``operation`` with a per-attempt timeout, retrying only on rate limits.

    Any other error (and the last rate-limit error) propagates to the caller.
    """
    configured = config.max_retries if max_retries is None else max_retries
    attempts = max(0, min(configured, MAX_RETRY_CAP)) + 1
    limit = config.model_timeout if timeout is None else timeout

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=limit)
        except Exception as exc:
            if not is_rate_limited_error(exc) or attempt >= attempts:
                raise
            delay = _retry_delay_seconds(attempt)
            logger.warning(
                "Rate limited on %s (attempt %s/%s). Retrying in %.2fs.",
                operation_name,
                attempt,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError(f"Unexpected retry state for {operation_name}")


class IntervalLimiter:
    """
    Enforces a minimum spacing between the starts of successive calls.

    Each caller reserves the next free slot synchronously and then sleeps
    until it, so no lock is held while waiting.
    """

    def __init__(self, interval_seconds: float):
        self.interval = interval_seconds
        self._next_slot = 0.0

    async def wait(self) -> float:
        now = time.monotonic()
        start = max(now, self._next_slot)
        self._next_slot = start + self.interval
        delay = start - now
        if delay > 0:
            logger.info(f"      Rate limit: waiting {delay:.1f}s")
            await asyncio.sleep(delay)
        return delay

    def reset(self) -> None:
        self._next_slot = 0.0


# Global instances
_client: Optional[genai.Client] = None
_analysis_limiter: Optional[IntervalLimiter] = None


def get_gemini_client() -> genai.Client:
    """Get or create the global Gemini client"""
    global _client
    if _client is None:
        if not config.gemini_api_key:
            raise GeminiNotConfiguredError("GEMINI_API_KEY environment variable not set")
        logger.info("Initializing Gemini client")
        _client = genai.Client(api_key=config.gemini_api_key)
    return _client


def get_analysis_limiter() -> IntervalLimiter:
    """Limiter shared by all image analysis calls in this process"""
    global _analysis_limiter
    if _analysis_limiter is None:
        _analysis_limiter = IntervalLimiter(config.image_analysis_interval)
    return _analysis_limiter


async def generate_text(
    model: str,
    contents: Any,
    *,
    operation_name: str,
    disable_thinking: bool = False,
    client: Optional[genai.Client] = None,
) -> str:
    """
    Run one generate_content call and return the stripped response text.

    Args:
        model: Model name
        contents: Prompt string or list of parts
        operation_name: Label used in retry logs
        disable_thinking: Set a zero thinking budget (cheap, short answers)
        client: Optional client, defaults to the global one

    Returns:
        Response text ("" when the model returned no text)
    """
    gemini = client or get_gemini_client()
    generation_config = None
    if disable_thinking:
        generation_config = types.GenerateContentConfig(
            thinking_config=types.ThinkingConfig(thinking_budget=0),
        )

    response = await generate_with_retry(
        lambda: gemini.aio.models.generate_content(
            model=model,
            contents=contents,
            config=generation_config,
        ),
        operation_name=operation_name,
    )
    return (response.text or "").strip()
