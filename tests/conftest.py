"""Pytest configuration and fixtures."""

import json
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.services.adapters import AdapterRegistry, CancelToken, Delta, ImageInput, ModelAdapter, ModelSpec
from app.services.persistence import PersistenceEngine

TEST_MODEL_ID = "test/model"


class ScriptedAdapter(ModelAdapter):
    """Adapter that replays a fixed list of deltas.

    ``gate`` (if set) must be opened before the delta at index ``block_at`` is
    produced; while waiting the adapter keeps polling the cancel token.
    """

    def __init__(
        self,
        model_id: str = TEST_MODEL_ID,
        deltas: Sequence[str] = ("Part1", "Part2", "Part3"),
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
        block_at: int = 0,
        citations: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(model_id)
        self.deltas = list(deltas)
        self.error = error
        self.gate = gate
        self.block_at = block_at
        self.citations = citations
        self.calls: List[Dict[str, Any]] = []

    def generate(
        self,
        prompt: str,
        history: Sequence[Dict[str, str]] = (),
        image: Optional[ImageInput] = None,
        params: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.calls.append(
            {
                "prompt": prompt,
                "history": [dict(m) for m in history],
                "image": image,
                "params": params,
                "system": system,
            }
        )
        for index, text in enumerate(self.deltas):
            if self.gate is not None and index == self.block_at:
                while not self.gate.wait(0.01):
                    if cancel is not None and cancel.cancelled:
                        return
            if cancel is not None and cancel.cancelled:
                return
            citations = self.citations if index == len(self.deltas) - 1 else None
            yield Delta(text=text, citations=citations)
        if self.error is not None:
            raise self.error


def make_registry(adapter: ModelAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(
        ModelSpec(id=adapter.model_id, name="Test Model", provider="OPENROUTER", supports_vision=True),
        lambda model_id: adapter,
    )
    return registry


def parse_frames(frames) -> List[Tuple[str, Dict[str, Any]]]:
    """Parse SSE frames (strings, or one concatenated body) into (event, data) pairs."""
    if isinstance(frames, str):
        frames = [f + "\n\n" for f in frames.split("\n\n") if f.strip()]
    parsed = []
    for frame in frames:
        event = "message"
        data = None
        for line in frame.strip().split("\n"):
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        parsed.append((event, data))
    return parsed


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite shared across threads (the generation worker writes from its own thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture(scope="function")
def persistence(session_factory):
    return PersistenceEngine(session_factory)


@pytest.fixture
def adapter():
    return ScriptedAdapter()


@pytest.fixture
def registry(adapter):
    return make_registry(adapter)
