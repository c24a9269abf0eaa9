"""
LLM Generator - text and structured generation with timeout, retry and caching
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, List, Optional, Type, TypeVar

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from penny.config import DEFAULT_BASE_URL, DEFAULT_MODEL
from penny.core.errors import GenerationError, GenerationTimeoutError, RetriesExhaustedError
from penny.core.structured import build_structured_prompt, parse_structured
from penny.utils.cache import ResponseCache
from penny.utils.logger import AgentLogger

T = TypeVar("T", bound=BaseModel)

MAX_RETRIES = 3
INITIAL_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0


class Completion(BaseModel):
    """One generator reply with its usage accounting."""
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: float = 0.0
    cached: bool = False
    model: str = ""
    parsed: Optional[Any] = None


def is_retryable(error: BaseException) -> bool:
    """Rate limits, server errors and dropped connections are worth retrying."""
    if isinstance(error, openai.APIConnectionError):
        return True
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return False


def _content_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


class LLMGenerator:
    """
    Thin client over ChatOpenAI.

    A fresh chat model is built per call so temperature and token limits can
    vary; the model's own retry loop is disabled and replaced by ours.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        default_timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        max_delay: float = MAX_DELAY_SECONDS,
        cache: Optional[ResponseCache] = None,
        logger: Optional[AgentLogger] = None,
        llm_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.cache = cache if cache is not None else ResponseCache()
        self.logger = logger
        self._llm_factory = llm_factory or self._default_llm
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _default_llm(self, temperature: float, max_tokens: int) -> ChatOpenAI:
        return ChatOpenAI(
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=0,
        )

    def _log(self, step_type: str, content: Any) -> None:
        if self.logger:
            self.logger.log_step(step_type, content)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for the given zero-based retry, with ±25% jitter."""
        exponential = self.initial_delay * (2 ** attempt)
        jitter = exponential * 0.25 * (self._rng.random() * 2 - 1)
        return min(exponential + jitter, self.max_delay)

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        timeout: Optional[float] = None,
        feature: str = "general",
        use_cache: bool = True,
        schema: Optional[Type[BaseModel]] = None,
    ) -> Completion:
        """
        Run one generation with retries.

        Args:
            prompt: User prompt
            system_instruction: Optional system message
            temperature: Sampling temperature
            max_tokens: Completion token ceiling
            timeout: Per-attempt ceiling in seconds (defaults to default_timeout)
            feature: Caller label, part of the cache key
            use_cache: Serve and store identical requests from the cache
            schema: Parse the reply into this model; only replies that parse are cached

        Returns:
            Completion

        Raises:
            GenerationTimeoutError: an attempt exceeded the timeout (not retried)
            RetriesExhaustedError: every retry of a transient failure failed
            StructuredOutputError: the reply does not fit schema
            GenerationError: a non-retryable failure
        """
        cache_key = ResponseCache.make_key(feature, system_instruction, prompt)
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._log("generator_cache_hit", {"feature": feature})
                parsed = parse_structured(cached, schema) if schema is not None else None
                return Completion(text=cached, cached=True, model=self.model, parsed=parsed)

        messages: List[BaseMessage] = []
        if system_instruction:
            messages.append(SystemMessage(content=system_instruction))
        messages.append(HumanMessage(content=prompt))

        ceiling = timeout or self.default_timeout
        start = time.monotonic()
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.backoff_delay(attempt - 1)
                self._log("generator_retry", {
                    "feature": feature, "attempt": attempt, "delay_seconds": round(delay, 3),
                    "error": str(last_error),
                })
                await self._sleep(delay)

            try:
                llm = self._llm_factory(temperature=temperature, max_tokens=max_tokens)
                response = await asyncio.wait_for(llm.ainvoke(messages), timeout=ceiling)
            except asyncio.TimeoutError as exc:
                self._log("generator_timeout", {"feature": feature, "timeout_seconds": ceiling})
                raise GenerationTimeoutError(
                    f"Generation for '{feature}' exceeded {ceiling}s"
                ) from exc
            except Exception as exc:
                if not is_retryable(exc):
                    raise GenerationError(f"Generation for '{feature}' failed: {exc}") from exc
                last_error = exc
                continue

            text = _content_text(response).strip()
            if not text:
                raise GenerationError(f"Empty reply for '{feature}'")

            usage = getattr(response, "usage_metadata", None) or {}
            completion = Completion(
                text=text,
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
                latency_ms=(time.monotonic() - start) * 1000,
                model=self.model,
            )
            if schema is not None:
                completion.parsed = parse_structured(text, schema)
            if use_cache:
                self.cache.set(cache_key, text)
            return completion

        attempts = self.max_retries + 1
        self._log("generator_exhausted", {"feature": feature, "attempts": attempts, "error": str(last_error)})
        raise RetriesExhaustedError(
            f"Generation for '{feature}' failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate text; accepts the same keyword arguments as complete()."""
        completion = await self.complete(prompt, **kwargs)
        return completion.text

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[T],
        system_instruction: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
        timeout: Optional[float] = None,
        feature: str = "structured",
    ) -> T:
        """Generate and parse a reply into schema (raises StructuredOutputError)."""
        completion = await self.complete(
            build_structured_prompt(prompt, schema),
            system_instruction=system_instruction,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            feature=feature,
            schema=schema,
        )
        return completion.parsed
