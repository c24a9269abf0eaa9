"""
Tests for the generator client: retries, timeouts, caching and structured output
"""

import asyncio
import random
from types import SimpleNamespace

import pytest
from pydantic import BaseModel

from penny.core.errors import (
    GenerationError,
    GenerationTimeoutError,
    RetriesExhaustedError,
    StructuredOutputError,
)
from penny.core.generator import LLMGenerator, is_retryable
from penny.utils.cache import ResponseCache


class StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class FakeChatModel:
    """Stands in for ChatOpenAI; replays a script of replies and errors."""

    def __init__(self, script, delay: float = 0.0):
        self.script = script
        self.delay = delay
        self.invocations = []

    async def ainvoke(self, messages):
        self.invocations.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.script.pop(0) if self.script else "fallback reply"
        if isinstance(item, BaseException):
            raise item
        return SimpleNamespace(
            content=item,
            usage_metadata={"input_tokens": 12, "output_tokens": 8, "total_tokens": 20},
        )


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_generator(chat: FakeChatModel, **kwargs):
    sleeps = Sleeps()
    factory_calls = []

    def factory(temperature, max_tokens):
        factory_calls.append({"temperature": temperature, "max_tokens": max_tokens})
        return chat

    generator = LLMGenerator(
        api_key="test", llm_factory=factory, sleep=sleeps, rng=random.Random(7), **kwargs
    )
    return generator, sleeps, factory_calls


class TestIsRetryable:
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient(self, status):
        assert is_retryable(StatusError(status))

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_permanent(self, status):
        assert not is_retryable(StatusError(status))

    def test_plain_exception(self):
        assert not is_retryable(ValueError("bad"))


class TestComplete:
    async def test_success_reports_usage(self):
        chat = FakeChatModel(["  Hello there  "])
        generator, sleeps, factory_calls = make_generator(chat)
        completion = await generator.complete("hi", system_instruction="be nice", temperature=0.2, max_tokens=50)

        assert completion.text == "Hello there"
        assert completion.prompt_tokens == 12
        assert completion.completion_tokens == 8
        assert completion.total_tokens == 20
        assert completion.cached is False
        assert factory_calls == [{"temperature": 0.2, "max_tokens": 50}]
        assert [m.content for m in chat.invocations[0]] == ["be nice", "hi"]

    async def test_retries_transient_then_succeeds(self):
        chat = FakeChatModel([StatusError(429), StatusError(503), "ok"])
        generator, sleeps, _ = make_generator(chat)
        assert await generator.generate("hi") == "ok"
        assert len(chat.invocations) == 3
        assert len(sleeps.delays) == 2
        assert 0.75 <= sleeps.delays[0] <= 1.25
        assert 1.5 <= sleeps.delays[1] <= 2.5

    async def test_permanent_error_is_not_retried(self):
        chat = FakeChatModel([StatusError(400)])
        generator, sleeps, _ = make_generator(chat)
        with pytest.raises(GenerationError) as excinfo:
            await generator.generate("hi")
        assert not isinstance(excinfo.value, RetriesExhaustedError)
        assert len(chat.invocations) == 1
        assert sleeps.delays == []

    async def test_retries_exhausted(self):
        chat = FakeChatModel([StatusError(503)] * 10)
        generator, sleeps, _ = make_generator(chat)
        with pytest.raises(RetriesExhaustedError) as excinfo:
            await generator.generate("hi")
        assert excinfo.value.attempts == 4
        assert len(chat.invocations) == 4
        assert len(sleeps.delays) == 3

    async def test_timeout_is_not_retried(self):
        chat = FakeChatModel(["late"], delay=1.0)
        generator, sleeps, _ = make_generator(chat)
        with pytest.raises(GenerationTimeoutError):
            await generator.generate("hi", timeout=0.01)
        assert len(chat.invocations) == 1
        assert sleeps.delays == []

    async def test_empty_reply(self):
        generator, _, _ = make_generator(FakeChatModel(["   "]))
        with pytest.raises(GenerationError):
            await generator.generate("hi")

    async def test_list_content_is_joined(self):
        generator, _, _ = make_generator(FakeChatModel([[{"type": "text", "text": "a"}, "b"]]))
        assert await generator.generate("hi") == "ab"

    async def test_identical_calls_hit_the_cache(self):
        chat = FakeChatModel(["first", "second"])
        generator, _, _ = make_generator(chat)
        await generator.complete("hi", feature="tip")
        cached = await generator.complete("hi", feature="tip")
        assert cached.cached is True
        assert cached.text == "first"
        assert len(chat.invocations) == 1

        fresh = await generator.complete("hi", feature="tip", use_cache=False)
        assert fresh.text == "second"

    async def test_cache_key_includes_feature(self):
        chat = FakeChatModel(["first", "second"])
        generator, _, _ = make_generator(chat)
        await generator.generate("hi", feature="a")
        assert await generator.generate("hi", feature="b") == "second"


class TestBackoff:
    def test_jitter_bounds(self):
        generator, _, _ = make_generator(FakeChatModel([]))
        for attempt in range(4):
            base = 2 ** attempt
            assert 0.75 * base <= generator.backoff_delay(attempt) <= 1.25 * base

    def test_capped(self):
        generator, _, _ = make_generator(FakeChatModel([]))
        assert generator.backoff_delay(10) == 30.0


class Budget(BaseModel):
    category: str
    amounts: list[float]


class TestStructured:
    async def test_parses_fenced_json(self):
        chat = FakeChatModel(['```json\n{"category": "food", "amounts": [10, 20.5]}\n```'])
        generator, _, _ = make_generator(chat)
        budget = await generator.generate_structured("Give me a budget", Budget)
        assert budget == Budget(category="food", amounts=[10, 20.5])
        assert "Give me a budget" in chat.invocations[0][-1].content

    async def test_invalid_reply(self):
        generator, _, _ = make_generator(FakeChatModel(["nope"]))
        with pytest.raises(GenerationError):
            await generator.generate_structured("Give me a budget", Budget)

    async def test_invalid_reply_is_not_cached(self):
        chat = FakeChatModel(["nope", '{"category": "rent", "amounts": [900]}'])
        generator, _, _ = make_generator(chat)
        with pytest.raises(StructuredOutputError):
            await generator.generate_structured("Give me a budget", Budget)

        budget = await generator.generate_structured("Give me a budget", Budget)
        assert budget.category == "rent"
        assert len(chat.invocations) == 2

    async def test_valid_reply_is_served_from_cache(self):
        chat = FakeChatModel(['{"category": "food", "amounts": [10]}'])
        generator, _, _ = make_generator(chat)
        first = await generator.generate_structured("Give me a budget", Budget)
        second = await generator.generate_structured("Give me a budget", Budget)
        assert first == second
        assert len(chat.invocations) == 1


def test_default_cache_is_private():
    a = LLMGenerator(api_key="x")
    b = LLMGenerator(api_key="x")
    assert a.cache is not b.cache
    assert isinstance(a.cache, ResponseCache)
