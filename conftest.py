"""Shared pytest fixtures for the reminder core.

Each test gets its own SQLite file. Model providers are replaced with
scripted fakes so tests never leave the process.
"""

import os

# Must be set before any project module creates the default engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("INDEXER_ENABLED", "false")

import re
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

import database
from bedrock_client import ModelResponse
from retrieval import HybridRetrievalEngine
from store import EmbeddingStore, ReminderStore
from temporal import TemporalResolver

TODAY = date(2025, 6, 11)  # a Wednesday


class FakeEmbedder:
    """Bag-of-words embedder with a small constant bias component.

    Tokens get stable positions in first-seen order, so texts that share words
    score high and unrelated texts stay near zero.
    """

    def __init__(self, dimension: int = 256, bias: float = 0.1):
        self.dimension = dimension
        self.bias = bias
        self.vocabulary: Dict[str, int] = {}
        self.calls: List[str] = []

    def _index(self, token: str) -> int:
        if token not in self.vocabulary:
            self.vocabulary[token] = 1 + len(self.vocabulary) % (self.dimension - 1)
        return self.vocabulary[token]

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        vector[0] = self.bias
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[self._index(token)] += 1.0
        return vector

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return self.embed_sync(text)


class ScriptedProvider:
    """Converse provider that replays prepared responses and records requests."""

    def __init__(self, responses: List[ModelResponse]):
        self.responses = list(responses)
        self.requests: List[List[Dict[str, Any]]] = []

    async def converse(self, system_prompt, messages, tools) -> ModelResponse:
        # snapshot; the driver keeps appending to the same list
        self.requests.append([dict(m, content=list(m["content"])) for m in messages])
        if not self.responses:
            raise AssertionError("ScriptedProvider ran out of responses")
        return self.responses.pop(0)


class ScriptedCompletion:
    """JSON completion client returning prepared objects in order."""

    def __init__(self, responses: Optional[List[Dict[str, Any]]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete_json(self, system_prompt: str, user_message: str, max_tokens: int = 300):
        self.calls.append({"system": system_prompt, "user": user_message})
        return self.responses.pop(0) if self.responses else {}


def text_response(text: str, stop_reason: str = "end_turn") -> ModelResponse:
    return ModelResponse(stop_reason=stop_reason,
                         message={"role": "assistant", "content": [{"text": text}]})


def tool_response(*calls, text: Optional[str] = None) -> ModelResponse:
    """``calls`` are ``(tool_use_id, name, input)`` tuples."""
    content = [{"text": text}] if text else []
    content += [{"toolUse": {"toolUseId": tid, "name": name, "input": params}} for tid, name, params in calls]
    return ModelResponse(stop_reason="tool_use", message={"role": "assistant", "content": content})


@pytest.fixture
def session_factory(tmp_path):
    factory = database.create_session_factory(f"sqlite:///{tmp_path / 'reminders.db'}")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def reminder_store(session_factory):
    return ReminderStore(session_factory)


@pytest.fixture
def embedding_store(session_factory):
    return EmbeddingStore(session_factory)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def retrieval(reminder_store, embedding_store, embedder, completion):
    return HybridRetrievalEngine(
        reminder_store=reminder_store,
        embedding_store=embedding_store,
        embedder=embedder,
        resolver=TemporalResolver(None),
        completion_client=completion,
        top_k=15,
        threshold=0.2
    )
