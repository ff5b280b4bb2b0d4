"""
Tests for per-organization prompt overrides.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from memory_service.ai.prompts import FACT_EXTRACTION_PROMPT, memory_update_messages
from memory_service.db.models import Prompt
from memory_service.errors import StorageError, ValidationError
from memory_service.memory.types import Message
from memory_service.services.prompt import PromptService


CUSTOM = [
    Message(role="system", content="Extract only travel plans."),
    Message(role="user", content="Respond in JSON."),
]


@pytest.mark.asyncio
class TestPromptService:
    """Tests for get / set / reset / ensure_default / resolve."""

    async def test_get_without_override(self, prompts):
        assert await prompts.get("org1") is None

    async def test_resolve_falls_back_to_injected_default(self, prompts):
        resolved = await prompts.resolve("org1")
        assert resolved == prompts.default_prompt

    async def test_get_does_not_write(self, prompts, db_session):
        """Reading a missing prompt never persists the default."""
        await prompts.resolve("org1")

        rows = (await db_session.execute(select(Prompt))).scalars().all()
        assert rows == []

    async def test_set_then_get(self, prompts):
        await prompts.set("org1", CUSTOM)

        assert await prompts.get("org1") == CUSTOM
        assert await prompts.get("org2") is None

    async def test_set_replaces_wholesale(self, prompts, db_session):
        await prompts.set("org1", CUSTOM)
        await prompts.set("org1", CUSTOM[:1])

        assert await prompts.get("org1") == CUSTOM[:1]
        rows = (await db_session.execute(select(Prompt))).scalars().all()
        assert len(rows) == 1

    async def test_reset_restores_default(self, prompts):
        await prompts.set("org1", CUSTOM)

        await prompts.reset("org1")
        await prompts.reset("org1")

        assert await prompts.get("org1") is None
        assert await prompts.resolve("org1") == prompts.default_prompt

    async def test_ensure_default_is_idempotent(self, prompts):
        await prompts.ensure_default("org1")
        await prompts.ensure_default("org1")

        assert await prompts.get("org1") == prompts.default_prompt

    async def test_ensure_default_keeps_override(self, prompts):
        await prompts.set("org1", CUSTOM)

        await prompts.ensure_default("org1")

        assert await prompts.get("org1") == CUSTOM

    async def test_validation(self, prompts):
        with pytest.raises(ValidationError):
            await prompts.set("", CUSTOM)
        with pytest.raises(ValidationError):
            await prompts.set("org1", [])
        with pytest.raises(ValidationError):
            await prompts.get("")

    async def test_corrupt_row_falls_back(self, prompts, db_session):
        """A stored value that is not a message list is ignored by resolve."""
        db_session.add(Prompt(org_id="org1", prompt_content='{"not": "a list"}'))
        await db_session.commit()

        with pytest.raises(ValidationError):
            await prompts.get("org1")
        assert await prompts.resolve("org1") == prompts.default_prompt

    async def test_lookup_failure_falls_back(self, prompts, monkeypatch):
        monkeypatch.setattr(prompts, "get", AsyncMock(side_effect=StorageError("db down")))

        assert await prompts.resolve("org1") == prompts.default_prompt

    async def test_builtin_default(self, session_factory):
        service = PromptService(session_factory)

        assert service.default_prompt == FACT_EXTRACTION_PROMPT
        assert service.default_prompt[0].role == "system"


class TestReconciliationMessages:
    """Tests for the reconciliation prompt builder."""

    def test_views_are_embedded(self):
        messages = memory_update_messages(
            '[{"id": "0", "text": "Likes apples"}]',
            '{"facts": [{"fact": "Likes bananas"}]}',
        )

        assert [m.role for m in messages] == ["system", "user"]
        assert '[{"id": "0", "text": "Likes apples"}]' in messages[1].content
        assert '{"facts": [{"fact": "Likes bananas"}]}' in messages[1].content
        assert "{old_memory_json}" not in messages[1].content
