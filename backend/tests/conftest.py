"""Shared test fixtures for backend tests."""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from healthchat.core.config import settings
from healthchat.core.database import get_session
from healthchat.services.functions.base import (
    AnalysisOutcome,
    AnalysisRequest,
    BaseFunctionsClient,
    ChatReply,
    ChatRequest,
)

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def get_test_session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import healthchat.models  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def db_engine():
    return test_engine


class FakeFunctions(BaseFunctionsClient):
    """Scriptable stand-in for the remote functions.

    `replies` is consumed one item per chat call (a ChatReply or an exception
    to raise); when empty, `default_reply` is used. With `hold_replies` set,
    each chat call parks on an asyncio.Event appended to `pending` until the
    test sets it.
    """

    def __init__(self):
        self.chat_calls: list[ChatRequest] = []
        self.analysis_calls: list[tuple[str, AnalysisRequest]] = []
        self.replies: list = []
        self.default_reply = ChatReply(text="Hello from assistant")
        self.hold_replies = False
        self.pending: list[asyncio.Event] = []
        self.analysis_errors: dict[str, Exception] = {}
        self.analysis_outcomes = {
            "diagnosis": AnalysisOutcome(added=1, updated=1, items=[{"diagnosis": "Tension headache"}]),
            "solution": AnalysisOutcome(added=2, updated=2, items=[{"solution": "Hydrate"}, {"solution": "Rest"}]),
            "memory": AnalysisOutcome(updated=1),
        }
        self.migrated = 0
        self.migration_calls = 0

    async def chat(self, request: ChatRequest) -> ChatReply:
        self.chat_calls.append(request)
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if self.hold_replies:
            gate = asyncio.Event()
            self.pending.append(gate)
            await gate.wait()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def analyze(self, kind: str, request: AnalysisRequest) -> AnalysisOutcome:
        self.analysis_calls.append((kind, request))
        if kind in self.analysis_errors:
            raise self.analysis_errors[kind]
        return self.analysis_outcomes[kind]

    async def migrate_conversations(self) -> int:
        self.migration_calls += 1
        return self.migrated


@pytest.fixture
def fake_functions():
    return FakeFunctions()


@pytest.fixture
def client(fake_functions):
    """FastAPI TestClient with all external deps patched."""
    with (
        patch("healthchat.core.database.engine", test_engine),
        patch("healthchat.api.chat.engine", test_engine),
        patch("healthchat.api.chat.get_functions_client", return_value=fake_functions),
        patch.object(settings, "send_cooldown_seconds", 0.0),
        patch.object(settings, "analysis_retention_seconds", 0.0),
        patch.object(settings, "run_conversation_migration", False),
    ):
        from healthchat.main import app

        # Use FastAPI's dependency override for get_session
        app.dependency_overrides[get_session] = get_test_session

        with TestClient(app) as c:
            yield c

        app.dependency_overrides.clear()
