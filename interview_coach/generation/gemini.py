"""Gemini client for question/answer generation.

Transient provider errors (rate limits, overload, timeouts) are retried with
exponential backoff and jitter, then the next model in the fallback chain is
tried. The whole call is bounded by a deadline so a webhook delivery never
outlives the queue's timeout.
"""

from __future__ import annotations

import logging
import os
import random
import threading
import time
from typing import Callable

from dotenv import load_dotenv
from google import genai
from google.genai import types

logger = logging.getLogger(__name__)

DEFAULT_MODELS = ("gemini-2.5-pro", "gemini-2.5-pro-001", "gemini-2.5-flash")
MAX_RETRIES = 3
INITIAL_BACKOFF = 2.0  # seconds, doubles each retry
MAX_BACKOFF = 16.0
JITTER = 0.2  # +/- 20% of the delay
DEADLINE_SECONDS = float(os.environ.get("GENERATION_DEADLINE_SECONDS", "240"))
TEMPERATURE = 0.7

_RETRYABLE_CODES = {429, 500, 502, 503, 504}
_RETRYABLE_MARKERS = ("RESOURCE_EXHAUSTED", "UNAVAILABLE", "overloaded", "rate limit",
                      "timeout", "timed out", "DEADLINE_EXCEEDED")
_FATAL_MARKERS = ("API key not valid", "PERMISSION_DENIED", "INVALID_ARGUMENT")


class GenerationError(Exception):
    """The model could not produce a response."""


class RetryableGenerationError(GenerationError):
    """Every model failed with a transient error, or the deadline passed."""


def is_retryable(error: Exception) -> bool:
    """Classify a provider exception as transient."""
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code in _RETRYABLE_CODES
    lowered = str(error).lower()
    if any(marker.lower() in lowered for marker in _FATAL_MARKERS):
        return False
    return any(marker.lower() in lowered for marker in _RETRYABLE_MARKERS)


def _is_missing_model(error: Exception) -> bool:
    return getattr(error, "code", None) == 404 or "NOT_FOUND" in str(error)


def backoff_delay(attempt: int) -> float:
    """Delay before retry number attempt+1, capped and jittered."""
    delay = min(INITIAL_BACKOFF * (2 ** attempt), MAX_BACKOFF)
    return max(0.0, delay + delay * JITTER * (2 * random.random() - 1))


def configured_models() -> list[str]:
    raw = os.environ.get("GEMINI_MODELS", "")
    models = [m.strip() for m in raw.split(",") if m.strip()]
    return models or list(DEFAULT_MODELS)


class GeminiGenerator:
    """Calls Gemini for JSON output with retry and model fallback."""

    def __init__(
        self,
        client: genai.Client | None = None,
        models: list[str] | None = None,
        deadline_seconds: float = DEADLINE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if client is None:
            load_dotenv()
            api_key = os.environ.get("GEMINI_API_KEY")
            if not api_key:
                raise GenerationError("GEMINI_API_KEY not set")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.models = models or configured_models()
        self.deadline_seconds = deadline_seconds
        self.sleep = sleep

    def generate_json(self, prompt: str, schema: dict | None = None) -> str:
        """Return the raw JSON text of the first successful response."""
        deadline = time.monotonic() + self.deadline_seconds
        last_error: Exception | None = None

        for model in self.models:
            for attempt in range(1 + MAX_RETRIES):
                if time.monotonic() >= deadline:
                    raise RetryableGenerationError(
                        f"Generation deadline of {self.deadline_seconds:.0f}s exceeded"
                    )
                try:
                    response = self.client.models.generate_content(
                        model=model,
                        contents=prompt,
                        config=types.GenerateContentConfig(
                            response_mime_type="application/json",
                            response_json_schema=schema,
                            temperature=TEMPERATURE,
                        ),
                    )
                except Exception as e:
                    last_error = e
                    if _is_missing_model(e):
                        logger.warning("Model %s unavailable: %s", model, e)
                        break
                    if not is_retryable(e):
                        raise GenerationError(f"Gemini request failed: {e}") from e
                    if attempt < MAX_RETRIES:
                        delay = min(backoff_delay(attempt), max(0.0, deadline - time.monotonic()))
                        logger.warning(
                            "Gemini %s transient error (attempt %d/%d), waiting %.1fs: %s",
                            model, attempt + 1, MAX_RETRIES + 1, delay, e,
                        )
                        self.sleep(delay)
                        continue
                    logger.warning("Gemini %s exhausted retries, trying next model", model)
                    break

                text = response.text
                if not text:
                    # Safety block or empty candidate
                    raise GenerationError("Model returned an empty response")
                logger.info("Gemini %s responded (%d chars)", model, len(text))
                return text

        raise RetryableGenerationError(f"All Gemini models failed: {last_error}")


_generator: GeminiGenerator | None = None
_generator_lock = threading.Lock()


def get_generator() -> GeminiGenerator:
    """Process-wide generator, created on first use."""
    global _generator
    with _generator_lock:
        if _generator is None:
            _generator = GeminiGenerator()
        return _generator
