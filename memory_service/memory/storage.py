"""Storage layer for the memory service.

This module provides the persistent memory store: batched upserts, cosine
nearest-neighbour queries under equality filters, bulk lookup and delete, and
bidirectional cursor pagination ordered by ``(created_at, id)``.
"""

from typing import Any, List, Optional, Sequence

import numpy as np
import structlog
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memory_service.ai.embeddings import (
    EmbeddingProvider,
    cosine_similarity,
    pack_embedding,
    unpack_embedding,
)
from memory_service.config.settings import Settings, get_settings
from memory_service.db.database import insert_for
from memory_service.db.models import Memory, new_id, utcnow
from memory_service.errors import NotFoundError, StorageError, ValidationError
from memory_service.memory.types import (
    MatchMetadata,
    MemoryFilters,
    MemoryInsert,
    MemoryMatch,
    MemoryPage,
    MemoryRecord,
    QueryResult,
)

logger = structlog.get_logger()

# Every column except the embedding
RECORD_COLUMNS = (
    Memory.id,
    Memory.user_id,
    Memory.org_id,
    Memory.agent_id,
    Memory.memory_text,
    Memory.categories,
    Memory.created_at,
    Memory.updated_at,
)


class MemoryStore:
    """Persistent memory store on top of an async SQLAlchemy engine.

    Each operation runs in its own session obtained from ``session_factory``.
    Writes are a single transaction per call: a batch is either fully applied
    or not at all.

    Attributes:
        session_factory: Async session factory bound to the memory database.
        embedder: Optional provider used to embed texts passed without a
            vector (``add``) and text queries (``query``).
        settings: Settings supplying the vector size and listing limits.

    Example:
        >>> store = MemoryStore(get_sessionmaker(), embedder=provider)
        >>> [memory_id] = await store.add([
        ...     MemoryInsert(memory_text="Alex likes hiking", user_id="u1", org_id="org1")
        ... ])
        >>> result = await store.query(text="hiking", filters=MemoryFilters(org_id="org1"))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedder: Optional[EmbeddingProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.settings = settings or get_settings()

    # =========================================================================
    # Writes
    # =========================================================================

    async def add(self, items: Sequence[MemoryInsert]) -> List[str]:
        """Insert or upsert memories.

        Items carrying an ``id`` overwrite the existing row's text, embedding,
        ownership and categories while keeping its ``created_at``. Items
        without an ``id`` get a fresh one.

        Args:
            items: Rows to write.

        Returns:
            The resulting ids, in input order.

        Raises:
            ValidationError: A required field is empty, an explicit id is
                repeated, or an embedding has the wrong size.
            NotFoundError: An explicit id belongs to another organization.
            StorageError: The write failed; nothing was written.
        """
        if not items:
            return []

        for item in items:
            if not item.org_id:
                raise ValidationError(f"Memory {item.id or '(new)'} has no org_id")
            if not item.user_id:
                raise ValidationError(f"Memory {item.id or '(new)'} has no user_id")
            if not item.memory_text or not item.memory_text.strip():
                raise ValidationError(f"Memory {item.id or '(new)'} has no text")

        explicit_ids = [item.id for item in items if item.id]
        if len(explicit_ids) != len(set(explicit_ids)):
            raise ValidationError("Duplicate memory ids in one batch")

        embeddings = await self._resolve_embeddings(items)

        now = utcnow()
        records = [
            {
                "id": item.id or new_id(),
                "embedding": pack_embedding(embedding),
                "user_id": item.user_id,
                "org_id": item.org_id,
                "agent_id": item.agent_id or "",
                "memory_text": item.memory_text,
                "categories": item.categories,
                "created_at": now,
                "updated_at": now,
            }
            for item, embedding in zip(items, embeddings)
        ]
        ids = [record["id"] for record in records]

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    insert = insert_for(session)
                    stmt = insert(Memory).values(records)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[Memory.id],
                        set_={
                            "embedding": stmt.excluded.embedding,
                            "user_id": stmt.excluded.user_id,
                            "org_id": stmt.excluded.org_id,
                            "agent_id": stmt.excluded.agent_id,
                            "memory_text": stmt.excluded.memory_text,
                            "categories": stmt.excluded.categories,
                            "updated_at": stmt.excluded.updated_at,
                        },
                        # Never take over a row owned by another organization
                        where=Memory.org_id == stmt.excluded.org_id,
                    ).returning(Memory.id)
                    written = set((await session.execute(stmt)).scalars().all())

                    missing = [memory_id for memory_id in ids if memory_id not in written]
                    if missing:
                        raise NotFoundError(
                            "Memory not found in this organization",
                            details={"ids": missing},
                        )
        except SQLAlchemyError as e:
            logger.error("memory_add_failed", error=str(e), count=len(records))
            raise StorageError(f"Failed to write memories: {e}") from e

        logger.debug("memories_written", count=len(ids))
        return ids

    async def delete(self, ids: Sequence[str], org_id: str) -> int:
        """Physically delete memories by id within one organization.

        Unknown ids are ignored. Returns the number of rows removed.
        """
        self._require_org(org_id)
        if not ids:
            return 0
        stmt = delete(Memory).where(Memory.id.in_(list(ids)), Memory.org_id == org_id)
        return await self._execute_delete(stmt)

    async def delete_by_filters(self, filters: MemoryFilters) -> int:
        """Delete every memory matching ``filters``. At least one filter is required."""
        conditions = self._conditions(filters)
        if not conditions:
            raise ValidationError("Refusing to delete without filters")
        return await self._execute_delete(delete(Memory).where(*conditions))

    # =========================================================================
    # Reads
    # =========================================================================

    async def query(
        self,
        embedding: Optional[Sequence[float]] = None,
        text: Optional[str] = None,
        limit: int = 10,
        filters: Optional[MemoryFilters] = None,
    ) -> QueryResult:
        """Rank stored memories by cosine similarity to a vector or a text.

        Args:
            embedding: Query vector. Mutually exclusive with ``text``.
            text: Query text, embedded with the store's embedder.
            limit: Maximum number of matches.
            filters: Equality filters applied before ranking.

        Returns:
            Matches sorted by ``score`` (``1 - cosine distance``) descending.
        """
        if (embedding is None) == (text is None):
            raise ValidationError("Exactly one of text or embedding must be provided")
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        if text is not None:
            clean_text = text.strip().replace("\n", " ")
            if not clean_text:
                raise ValidationError("Query text cannot be empty")
            [embedding] = await self._embed([clean_text])

        vector = np.asarray(embedding, dtype=np.float32)
        self._check_dimensions(vector)

        conditions = self._conditions(filters)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Memory.embedding, *RECORD_COLUMNS).where(*conditions)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            logger.error("memory_query_failed", error=str(e))
            raise StorageError(f"Failed to query memories: {e}") from e

        if not rows:
            return QueryResult()

        matrix = np.vstack([unpack_embedding(row.embedding) for row in rows])
        scores = cosine_similarity(vector, matrix)
        top = np.argsort(-scores, kind="stable")[:limit]

        return QueryResult(
            matches=[
                MemoryMatch(
                    id=rows[i].id,
                    score=float(scores[i]),
                    metadata=MatchMetadata(
                        user_id=rows[i].user_id,
                        org_id=rows[i].org_id,
                        agent_id=rows[i].agent_id,
                        memory_text=rows[i].memory_text,
                        categories=rows[i].categories,
                    ),
                )
                for i in top
            ]
        )

    async def get_all_by_id(
        self,
        ids: Sequence[str],
        org_id: str,
    ) -> List[MemoryRecord]:
        """Bulk point lookup within one organization. Ids that are not found are simply absent."""
        self._require_org(org_id)
        if not ids:
            return []
        stmt = select(*RECORD_COLUMNS).where(Memory.id.in_(list(ids)), Memory.org_id == org_id)
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            logger.error("memory_lookup_failed", error=str(e), count=len(ids))
            raise StorageError(f"Failed to load memories: {e}") from e
        return [MemoryRecord.model_validate(dict(row._mapping)) for row in rows]

    async def get_by_filters(
        self,
        filters: MemoryFilters,
        limit: Optional[int] = None,
        include_total: bool = False,
        starting_after: Optional[str] = None,
        ending_before: Optional[str] = None,
    ) -> MemoryPage:
        """List memories newest first with cursor pagination.

        ``starting_after`` pages towards older memories, ``ending_before``
        towards newer ones. Either way the page is returned ordered
        ``created_at DESC, id DESC``.

        Args:
            filters: Equality filters; callers must inject ``org_id``.
            limit: Page size, clamped to [1, list_max_limit].
            include_total: Also count every row matching ``filters``.
            starting_after: Id of the row the page starts after.
            ending_before: Id of the row the page ends before.

        Raises:
            ValidationError: Both cursors were given.
            NotFoundError: The cursor id does not resolve to a row.
        """
        if starting_after and ending_before:
            raise ValidationError(
                "The parameters starting_after and ending_before cannot be used simultaneously"
            )

        limit = self.clamp_limit(limit)
        conditions = self._conditions(filters)
        backward = bool(ending_before)
        cursor_id = starting_after or ending_before

        try:
            async with self.session_factory() as session:
                reference = None
                if cursor_id:
                    ref_stmt = select(Memory.id, Memory.created_at).where(Memory.id == cursor_id)
                    if filters.org_id:
                        ref_stmt = ref_stmt.where(Memory.org_id == filters.org_id)
                    reference = (await session.execute(ref_stmt.limit(1))).one_or_none()
                    if reference is None:
                        raise NotFoundError("cursor record not found", details={"cursor": cursor_id})

                page_conditions = list(conditions)
                if reference is not None:
                    page_conditions.append(self._cursor_condition(reference, newer=backward))

                if backward:
                    order_by = (Memory.created_at.asc(), Memory.id.asc())
                else:
                    order_by = (Memory.created_at.desc(), Memory.id.desc())

                result = await session.execute(
                    select(*RECORD_COLUMNS)
                    .where(*page_conditions)
                    .order_by(*order_by)
                    .limit(limit + 1)
                )
                rows = result.all()

                total = None
                if include_total:
                    total = (
                        await session.execute(select(func.count(Memory.id)).where(*conditions))
                    ).scalar_one()
        except SQLAlchemyError as e:
            logger.error("memory_list_failed", error=str(e))
            raise StorageError(f"Failed to list memories: {e}") from e

        if backward:
            # Oldest of the newer rows came first; flip back to newest first
            page = list(reversed(rows[:limit]))
            if self.settings.pagination_legacy_backward_has_more:
                has_more = True
            else:
                has_more = len(rows) > limit
        else:
            page = rows[:limit]
            has_more = len(rows) > limit

        logger.debug(
            "memories_listed",
            direction="backward" if backward else "forward",
            cursor=cursor_id,
            returned=len(page),
            has_more=has_more,
        )

        return MemoryPage(
            data=[MemoryRecord.model_validate(dict(row._mapping)) for row in page],
            has_more=has_more,
            total=total,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.settings.list_default_limit
        return max(1, min(limit, self.settings.list_max_limit))

    @staticmethod
    def _require_org(org_id: Optional[str]) -> None:
        if not org_id:
            raise ValidationError("org_id is required")

    @staticmethod
    def _conditions(filters: Optional[MemoryFilters]) -> list:
        if filters is None:
            return []
        return [getattr(Memory, name) == value for name, value in filters.items()]

    @staticmethod
    def _cursor_condition(reference: Any, newer: bool):
        """Rows strictly after (``newer``) or before the reference in (created_at, id) order."""
        if newer:
            return or_(
                Memory.created_at > reference.created_at,
                and_(Memory.created_at == reference.created_at, Memory.id > reference.id),
            )
        return or_(
            Memory.created_at < reference.created_at,
            and_(Memory.created_at == reference.created_at, Memory.id < reference.id),
        )

    async def _execute_delete(self, stmt) -> int:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    deleted = result.rowcount
        except SQLAlchemyError as e:
            logger.error("memory_delete_failed", error=str(e))
            raise StorageError(f"Failed to delete memories: {e}") from e
        logger.debug("memories_deleted", count=deleted)
        return deleted

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        if self.embedder is None:
            raise ValidationError("No embedder configured; pass embeddings explicitly")
        return await self.embedder.embed(texts)

    async def _resolve_embeddings(self, items: Sequence[MemoryInsert]) -> List[List[float]]:
        """Fill in missing vectors with one batched embed call, by position."""
        missing = [i for i, item in enumerate(items) if item.embedding is None]
        embeddings = [item.embedding for item in items]
        if missing:
            logger.debug("embedding_missing_vectors", count=len(missing))
            vectors = await self._embed([items[i].memory_text for i in missing])
            for i, vector in zip(missing, vectors):
                embeddings[i] = vector
        for vector in embeddings:
            self._check_dimensions(vector)
        return embeddings

    def _check_dimensions(self, vector: Sequence[float]) -> None:
        if len(vector) != self.settings.embedding_dimensions:
            raise ValidationError(
                f"Embedding must have {self.settings.embedding_dimensions} dimensions, got {len(vector)}"
            )
