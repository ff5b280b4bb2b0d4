"""
Pytest configuration and fixtures for memory_service tests.

Provides:
- Test settings
- In-memory SQLite database and session factory
- Deterministic hashing embedder
- Scripted text generator
- Store, prompt service and memory system wired together
"""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, List, Optional, Sequence, Union

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from memory_service.config.settings import Settings
from memory_service.db.models import Base, Memory
from memory_service.ai.embeddings import pack_embedding
from memory_service.memory.memory_system import MemorySystem
from memory_service.memory.storage import MemoryStore
from memory_service.memory.types import Message
from memory_service.services.prompt import PromptService


DIMENSIONS = 768


# =============================================================================
# Test Settings
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Override settings for testing."""
    return Settings(
        environment="testing",
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        openai_api_key="test-key",
        embedding_dimensions=DIMENSIONS,
        pagination_legacy_backward_has_more=False,
    )


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async engine for tests."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# Fake providers
# =============================================================================

class HashingEmbedder:
    """Bag-of-words embedder: each word lands in an md5-chosen bucket.

    Texts sharing words get a positive cosine similarity, identical word sets
    score 1.0.
    """

    def __init__(self, dimensions: int = DIMENSIONS):
        self.dimensions = dimensions
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vector(text) for text in texts]


Reply = Union[BaseModel, Exception, Callable[[Sequence[Message], type], BaseModel]]


class ScriptedGenerator:
    """Text generator that returns queued replies in order.

    A reply may be a schema instance, an exception to raise, or a callable
    receiving ``(messages, schema)``.
    """

    def __init__(self, replies: Optional[List[Reply]] = None):
        self.replies: List[Reply] = list(replies or [])
        self.calls: List[dict[str, Any]] = []

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    async def generate(self, messages, schema, model=None):
        self.calls.append({"messages": list(messages), "schema": schema, "model": model})
        if not self.replies:
            raise AssertionError(f"Unexpected generate call for {schema.__name__}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply) and not isinstance(reply, BaseModel):
            reply = reply(messages, schema)
        assert isinstance(reply, schema)
        return reply


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def store(session_factory, embedder, test_settings) -> MemoryStore:
    return MemoryStore(session_factory, embedder=embedder, settings=test_settings)


@pytest.fixture
def prompts(session_factory) -> PromptService:
    return PromptService(
        session_factory,
        default_prompt=[Message(role="system", content="Extract facts about the user.")],
    )


@pytest.fixture
def memory_system(store, generator, embedder, prompts, test_settings) -> MemorySystem:
    return MemorySystem(store, generator, embedder, prompts, settings=test_settings)


# =============================================================================
# Seed data
# =============================================================================

@pytest.fixture
def seed_memories(session_factory, embedder):
    """Insert memories with strictly increasing ``created_at``.

    Returns the inserted ids, oldest first.
    """

    async def _seed(
        count: int,
        org_id: str = "org1",
        user_id: str = "user1",
        agent_id: str = "",
        prefix: str = "mem",
        start: Optional[datetime] = None,
    ) -> List[str]:
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        rows = []
        for i in range(count):
            text = f"{prefix} number {i}"
            created = start + timedelta(minutes=i)
            rows.append(
                Memory(
                    id=f"{prefix}-{i:03d}",
                    embedding=pack_embedding(embedder.vector(text)),
                    user_id=user_id,
                    org_id=org_id,
                    agent_id=agent_id,
                    memory_text=text,
                    created_at=created,
                    updated_at=created,
                )
            )
        async with session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return [row.id for row in rows]

    return _seed
