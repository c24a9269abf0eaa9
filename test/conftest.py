"""
Pytest configuration and fixtures for Penny tests.

Collaborators that would reach the network (generator, dispatcher) are
replaced with scripted fakes; persistence uses the real stores.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from penny.core.generator import Completion
from penny.core.structured import build_structured_prompt, parse_structured
from penny.core.telemetry import TelemetrySink
from penny.db.kv_store import MemoryKeyValueStore, SQLiteKeyValueStore
from penny.utils.logger import AgentLogger

# Wednesday; the week started on Sunday 2024-01-07
START = datetime(2024, 1, 10, 10, 0, 0)


# =========================================================================
# Fakes
# =========================================================================


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


class FakeGenerator:
    """
    Scripted generator.

    Each call pops the next scripted item: a string is the reply text, a
    dict is serialized to JSON, an exception instance is raised. When the
    script runs out the default reply is returned.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default: str = "Keep going! 🚀"):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self.model = "fake-model"

    def queue(self, *items: Any):
        self.responses.extend(items)

    async def complete(self, prompt: str, **kwargs) -> Completion:
        self.calls.append({"prompt": prompt, **kwargs})
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, (dict, list)):
            item = json.dumps(item)
        schema = kwargs.get("schema")
        parsed = parse_structured(item, schema) if schema is not None else None
        return Completion(text=item, total_tokens=42, latency_ms=5.0, model=self.model, parsed=parsed)

    async def generate(self, prompt: str, **kwargs) -> str:
        completion = await self.complete(prompt, **kwargs)
        return completion.text

    async def generate_structured(self, prompt: str, schema, **kwargs):
        completion = await self.complete(build_structured_prompt(prompt, schema), schema=schema, **kwargs)
        return completion.parsed


class FakeDispatcher:
    """Records notifications instead of delivering them."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def schedule_immediate(self, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> str:
        if self.fail:
            raise ConnectionError("dispatcher offline")
        self.sent.append({"title": title, "body": body, "data": data or {}})
        return f"notif_{len(self.sent)}"


class FailingStore:
    """Key-value store whose every call fails."""

    async def get(self, key: str):
        raise OSError("store unavailable")

    async def set(self, key: str, value: Any):
        raise OSError("store unavailable")

    async def remove(self, key: str):
        raise OSError("store unavailable")

    async def keys(self, prefix: str = ""):
        raise OSError("store unavailable")


# =========================================================================
# Fixtures
# =========================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteKeyValueStore:
    return SQLiteKeyValueStore(str(tmp_path / "penny.db"))


@pytest.fixture
def logger(tmp_path) -> AgentLogger:
    return AgentLogger(str(tmp_path / "logs"))


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def telemetry(store, logger) -> TelemetrySink:
    return TelemetrySink(store, logger=logger)
