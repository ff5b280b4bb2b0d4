"""
SQLAlchemy ORM models for the memory service.

Database schema for:
- Memories (core data, one row per stored fact)
- Prompts (per-organization fact-extraction overrides)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    Text,
    DateTime,
    LargeBinary,
    JSON,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Memories (Core Data)
# =============================================================================

class Memory(Base):
    """
    A single stored fact owned by a user inside an organization.

    ``created_at`` is the pagination sort key and is written once at insert;
    upserts only touch ``updated_at``.
    """
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    # Embedding of memory_text, packed float32
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    # Ownership
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    org_id: Mapped[str] = mapped_column(String(255), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(255), nullable=False, default="", server_default="")

    # Memory content
    memory_text: Mapped[str] = mapped_column(Text, nullable=False)
    categories: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_memories_user_id", "user_id"),
        Index("ix_memories_org_id", "org_id"),
        Index("ix_memories_agent_id", "agent_id"),
        Index("ix_memories_created_id", "created_at", "id"),
        Index("ix_memories_org_created_id", "org_id", "created_at", "id"),
    )


# =============================================================================
# Prompts
# =============================================================================

class Prompt(Base):
    """
    Fact-extraction prompt override for an organization.

    ``prompt_content`` holds a JSON-serialized list of chat messages.
    At most one row per organization; no row means the default applies.
    """
    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    prompt_content: Mapped[str] = mapped_column(Text, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
