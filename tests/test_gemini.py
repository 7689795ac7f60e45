"""Tests for the Gemini generator's retry, fallback and deadline handling.

The genai client is replaced with a fake; no network calls are made.
"""

from types import SimpleNamespace

import pytest

from interview_coach.generation.gemini import (
    GeminiGenerator,
    GenerationError,
    RetryableGenerationError,
    backoff_delay,
    configured_models,
    is_retryable,
)


class ProviderError(Exception):
    def __init__(self, code, message="error"):
        super().__init__(f"{code} {message}")
        self.code = code


class FakeModels:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append(model)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(text=outcome)


def _generator(outcomes, models=("m1", "m2"), deadline=240.0):
    fake = FakeModels(outcomes)
    sleeps = []
    generator = GeminiGenerator(
        client=SimpleNamespace(models=fake),
        models=list(models),
        deadline_seconds=deadline,
        sleep=sleeps.append,
    )
    return generator, fake, sleeps


class TestClassification:
    def test_codes(self):
        assert is_retryable(ProviderError(429))
        assert is_retryable(ProviderError(503))
        assert not is_retryable(ProviderError(400))
        assert not is_retryable(ProviderError(403))

    def test_messages_without_code(self):
        assert is_retryable(RuntimeError("Request timed out"))
        assert is_retryable(RuntimeError("model is overloaded"))
        assert not is_retryable(RuntimeError("API key not valid"))
        assert not is_retryable(RuntimeError("something odd"))


class TestBackoff:
    def test_doubles_and_caps(self):
        for attempt, base in ((0, 2.0), (1, 4.0), (2, 8.0), (5, 16.0)):
            delay = backoff_delay(attempt)
            assert base * 0.8 <= delay <= base * 1.2


class TestGenerate:
    def test_first_try(self):
        generator, fake, sleeps = _generator(['{"question": "Why us?"}'])
        assert generator.generate_json("prompt") == '{"question": "Why us?"}'
        assert fake.calls == ["m1"]
        assert sleeps == []

    def test_retries_transient_then_succeeds(self):
        generator, fake, sleeps = _generator([ProviderError(503), ProviderError(429), "{}"])
        assert generator.generate_json("prompt") == "{}"
        assert fake.calls == ["m1", "m1", "m1"]
        assert len(sleeps) == 2

    def test_exhausted_retries_fall_back(self):
        generator, fake, sleeps = _generator([ProviderError(503)] * 4 + ["{}"])
        assert generator.generate_json("prompt") == "{}"
        assert fake.calls == ["m1"] * 4 + ["m2"]
        assert len(sleeps) == 3

    def test_missing_model_skips_immediately(self):
        generator, fake, sleeps = _generator([ProviderError(404, "NOT_FOUND"), "{}"])
        assert generator.generate_json("prompt") == "{}"
        assert fake.calls == ["m1", "m2"]
        assert sleeps == []

    def test_fatal_error_raises(self):
        generator, fake, _ = _generator([ProviderError(400, "INVALID_ARGUMENT")])
        with pytest.raises(GenerationError) as exc:
            generator.generate_json("prompt")
        assert not isinstance(exc.value, RetryableGenerationError)
        assert fake.calls == ["m1"]

    def test_all_models_fail(self):
        generator, _, _ = _generator([ProviderError(503)] * 8)
        with pytest.raises(RetryableGenerationError):
            generator.generate_json("prompt")

    def test_empty_response(self):
        generator, _, _ = _generator([""])
        with pytest.raises(GenerationError):
            generator.generate_json("prompt")

    def test_deadline(self):
        generator, fake, _ = _generator(["{}"], deadline=0)
        with pytest.raises(RetryableGenerationError, match="deadline"):
            generator.generate_json("prompt")
        assert fake.calls == []


class TestConfig:
    def test_default_chain(self, monkeypatch):
        monkeypatch.delenv("GEMINI_MODELS", raising=False)
        assert configured_models()[0] == "gemini-2.5-pro"

    def test_override(self, monkeypatch):
        monkeypatch.setenv("GEMINI_MODELS", "gemini-2.5-flash, gemini-2.0-flash")
        assert configured_models() == ["gemini-2.5-flash", "gemini-2.0-flash"]

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setattr("interview_coach.generation.gemini.load_dotenv", lambda: None)
        with pytest.raises(GenerationError):
            GeminiGenerator()
