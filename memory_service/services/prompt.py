"""
Per-organization fact-extraction prompt overrides.

An organization without a stored row uses the default prompt. Reads never
write; ``ensure_default`` is the explicit initialization step.
"""

from typing import List, Optional, Sequence

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memory_service.ai.prompts import FACT_EXTRACTION_PROMPT
from memory_service.db.database import insert_for
from memory_service.db.models import Prompt, new_id, utcnow
from memory_service.errors import MemoryServiceError, StorageError, ValidationError
from memory_service.memory.types import Message

logger = structlog.get_logger()

_MESSAGES = TypeAdapter(List[Message])


class PromptService:
    """Stores and resolves the fact-extraction prompt of each organization."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_prompt: Optional[Sequence[Message]] = None,
    ):
        self.session_factory = session_factory
        self.default_prompt = list(default_prompt or FACT_EXTRACTION_PROMPT)

    async def get(self, org_id: str) -> Optional[List[Message]]:
        """Return the stored override, or ``None`` when the org has none."""
        self._require_org(org_id)
        try:
            async with self.session_factory() as session:
                content = (
                    await session.execute(
                        select(Prompt.prompt_content).where(Prompt.org_id == org_id)
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("prompt_lookup_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to load prompt: {e}") from e

        if content is None:
            return None
        try:
            return _MESSAGES.validate_json(content)
        except PydanticValidationError as e:
            raise ValidationError(
                "Stored prompt is not a valid message list",
                details={"org_id": org_id},
            ) from e

    async def resolve(self, org_id: str) -> List[Message]:
        """Return the override if there is one, else the default.

        Lookup failures are logged and fall back to the default.
        """
        try:
            prompt = await self.get(org_id)
        except MemoryServiceError as e:
            logger.warning("prompt_fallback_to_default", org_id=org_id, error=e.message)
            return list(self.default_prompt)
        return prompt if prompt else list(self.default_prompt)

    async def set(self, org_id: str, messages: Sequence[Message]) -> List[Message]:
        """Replace the org's prompt wholesale."""
        self._require_org(org_id)
        if not messages:
            raise ValidationError("Prompt must contain at least one message")

        messages = list(messages)
        content = _MESSAGES.dump_json(messages).decode()
        now = utcnow()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    insert = insert_for(session)
                    stmt = insert(Prompt).values(
                        id=new_id(),
                        org_id=org_id,
                        prompt_content=content,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[Prompt.org_id],
                        set_={
                            "prompt_content": stmt.excluded.prompt_content,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    await session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("prompt_update_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to store prompt: {e}") from e

        logger.info("prompt_updated", org_id=org_id, messages=len(messages))
        return messages

    async def reset(self, org_id: str) -> None:
        """Drop the override so the default applies again."""
        self._require_org(org_id)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(Prompt).where(Prompt.org_id == org_id))
        except SQLAlchemyError as e:
            logger.error("prompt_reset_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to reset prompt: {e}") from e
        logger.info("prompt_reset", org_id=org_id)

    async def ensure_default(self, org_id: str) -> None:
        """Store the default prompt for the org unless it already has one."""
        self._require_org(org_id)
        now = utcnow()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    insert = insert_for(session)
                    stmt = insert(Prompt).values(
                        id=new_id(),
                        org_id=org_id,
                        prompt_content=_MESSAGES.dump_json(self.default_prompt).decode(),
                        created_at=now,
                        updated_at=now,
                    ).on_conflict_do_nothing(index_elements=[Prompt.org_id])
                    await session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("prompt_init_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to initialize prompt: {e}") from e

    @staticmethod
    def _require_org(org_id: str) -> None:
        if not org_id:
            raise ValidationError("org_id is required")
