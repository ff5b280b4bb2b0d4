"""Main memory system API combining extraction, retrieval and storage.

This module provides the high-level MemorySystem class. ``add`` turns a
conversation into a minimal set of ADD / UPDATE / DELETE operations against
the stored memories of one user:

1. Resolve the organization's fact-extraction prompt
2. Extract facts with the language model
3. Embed every fact in one batch
4. Collect similar stored memories for each fact
5. Show those memories to the model under short numeric indices
6. Let the model decide what to add, change or drop
7. Apply the decisions in the order the model emitted them

The model never sees a real memory id. Indices it returns are mapped back
through an ``IndexMap``; unknown indices are skipped, never guessed.
"""

import json
from typing import Dict, List, Optional, Sequence, Set

import structlog

from memory_service.ai.embeddings import EmbeddingProvider
from memory_service.ai.llm import TextGenerator
from memory_service.ai.prompts import memory_update_messages
from memory_service.config.settings import Settings, get_settings
from memory_service.errors import NotFoundError, ValidationError
from memory_service.memory.storage import MemoryStore
from memory_service.memory.types import (
    AddOperation,
    DeleteOperation,
    FactList,
    IndexMap,
    MatchMetadata,
    MemoryFilters,
    MemoryInsert,
    MemoryOperation,
    MemoryPage,
    MemoryUpdate,
    MemoryUpdateList,
    MemoryView,
    Message,
    ReconciliationResult,
    SearchResult,
    SkippedInstruction,
    UpdateOperation,
)
from memory_service.services.prompt import PromptService

logger = structlog.get_logger()


class MemorySystem:
    """Conversation-driven memory management on top of a ``MemoryStore``.

    Attributes:
        store: Persistent memory store.
        generator: Structured-decoding language model.
        embedder: Embedding provider for facts and search queries.
        prompts: Per-organization fact-extraction prompts.
        settings: Model names and retrieval limits.

    Example:
        >>> system = MemorySystem(store, generator, embedder, PromptService(sessions))
        >>> ops = await system.add(
        ...     "user1",
        ...     [Message(role="user", content="I like bananas, not apples anymore")],
        ...     "org1",
        ... )
        >>> [op.type for op in ops]
        ['UPDATE']
    """

    def __init__(
        self,
        store: MemoryStore,
        generator: TextGenerator,
        embedder: EmbeddingProvider,
        prompts: PromptService,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.generator = generator
        self.embedder = embedder
        self.prompts = prompts
        self.settings = settings or get_settings()

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def add(
        self,
        user_id: str,
        messages: Sequence[Message],
        org_id: str,
        agent_id: str = "",
    ) -> List[MemoryOperation]:
        """Learn from a conversation and return the applied operations."""
        result = await self.reconcile(user_id, messages, org_id, agent_id)
        return result.operations

    async def reconcile(
        self,
        user_id: str,
        messages: Sequence[Message],
        org_id: str,
        agent_id: str = "",
    ) -> ReconciliationResult:
        """Same as ``add`` but also reports the instructions that were skipped.

        Args:
            user_id: Owner of the memories.
            messages: Conversation to learn from.
            org_id: Organization of the caller; every read and write is scoped to it.
            agent_id: Optional agent the new memories are attributed to.

        Returns:
            Operations in emission order, plus UPDATE/DELETE instructions
            that could not be applied: missing or unknown index, or a memory
            already deleted earlier in the same call.

        Raises:
            ValidationError: ``user_id``, ``org_id`` or ``messages`` is empty.
            UpstreamError: A model or embedding call failed. Operations
                applied before the failure stay committed.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not org_id:
            raise ValidationError("org_id is required")
        if not messages:
            raise ValidationError("messages cannot be empty")

        prompt = await self.prompts.resolve(org_id)
        extracted = await self.generator.generate(
            [*prompt, *messages],
            FactList,
            model=self.settings.openai_model,
        )
        facts = [fact for fact in extracted.facts if fact.fact.strip()]
        if not facts:
            logger.debug("no_facts_extracted", user_id=user_id, org_id=org_id)
            return ReconciliationResult()

        fact_texts = [fact.fact for fact in facts]
        vectors = await self.embedder.embed(fact_texts)
        embeddings: Dict[str, List[float]] = {}
        for text, vector in zip(fact_texts, vectors):
            embeddings[text] = vector

        categories = {fact.fact: fact.categories for fact in facts}

        index_map = IndexMap()
        candidates: Dict[str, MatchMetadata] = {}
        filters = MemoryFilters(user_id=user_id, org_id=org_id)
        for vector in vectors:
            result = await self.store.query(
                embedding=vector,
                limit=self.settings.candidate_top_k,
                filters=filters,
            )
            for match in result.matches:
                if match.id not in candidates:
                    candidates[match.id] = match.metadata
                    index_map.register(match.id)

        old_memory = [
            {"id": index_map.index_of(memory_id), "text": metadata.memory_text}
            for memory_id, metadata in candidates.items()
        ]
        new_facts = {"facts": [{"fact": text} for text in fact_texts]}

        decisions = await self.generator.generate(
            memory_update_messages(
                json.dumps(old_memory, ensure_ascii=False),
                json.dumps(new_facts, ensure_ascii=False),
            ),
            MemoryUpdateList,
            model=self.settings.openai_reconcile_model,
        )

        logger.info(
            "memory_reconcile_started",
            user_id=user_id,
            org_id=org_id,
            facts=len(fact_texts),
            candidates=len(index_map),
            decisions=len(decisions.memory),
        )

        outcome = ReconciliationResult()
        deleted: Set[str] = set()
        for decision in decisions.memory:
            if decision.event == "NONE":
                continue

            if decision.event == "ADD":
                [memory_id] = await self.store.add([
                    MemoryInsert(
                        memory_text=decision.text,
                        user_id=user_id,
                        org_id=org_id,
                        agent_id=agent_id,
                        embedding=embeddings.get(decision.text),
                        categories=categories.get(decision.text),
                    )
                ])
                outcome.operations.append(AddOperation(id=memory_id, text=decision.text))
                continue

            memory_id = self._resolve_index(decision, index_map, deleted, outcome)
            if memory_id is None:
                continue

            if decision.event == "UPDATE":
                existing = candidates[memory_id]
                await self.store.add([
                    MemoryInsert(
                        id=memory_id,
                        memory_text=decision.text,
                        user_id=existing.user_id,
                        org_id=existing.org_id,
                        agent_id=existing.agent_id,
                        embedding=embeddings.get(decision.text),
                        categories=existing.categories,
                    )
                ])
                outcome.operations.append(
                    UpdateOperation(
                        id=memory_id,
                        old_text=decision.old_memory,
                        new_text=decision.text,
                    )
                )
            else:
                await self.store.delete([memory_id], org_id)
                deleted.add(memory_id)
                outcome.operations.append(DeleteOperation(id=memory_id))

        logger.info(
            "memory_reconcile_completed",
            user_id=user_id,
            org_id=org_id,
            operations=len(outcome.operations),
            skipped=len(outcome.skipped),
        )
        return outcome

    @staticmethod
    def _resolve_index(
        decision: MemoryUpdate,
        index_map: IndexMap,
        deleted: Set[str],
        outcome: ReconciliationResult,
    ) -> Optional[str]:
        """Map the model's index back to a live real id, recording it as skipped if it can't be.

        Memories deleted earlier in the same call are never written again.
        """
        if decision.id is None or not decision.id.strip():
            reason = "missing_id"
            memory_id = None
        else:
            memory_id = index_map.resolve(decision.id)
            reason = "unknown_index"

        if memory_id is not None and memory_id not in deleted:
            return memory_id

        if memory_id is not None:
            reason = "already_deleted"
            logger.warning(
                "memory_already_deleted",
                index=decision.id,
                memory_id=memory_id,
                memory_event=decision.event,
            )
        else:
            logger.warning(
                "memory_index_not_found",
                index=decision.id,
                memory_event=decision.event,
                reason=reason,
            )
        outcome.skipped.append(
            SkippedInstruction(
                event=decision.event,
                index=decision.id,
                text=decision.text,
                reason=reason,
            )
        )
        return None

    # =========================================================================
    # Direct access
    # =========================================================================

    async def get(self, memory_id: str, org_id: str) -> Optional[MemoryView]:
        """Return one memory, or ``None`` if it does not exist in ``org_id``."""
        records = await self.store.get_all_by_id([memory_id], org_id)
        if not records:
            return None
        record = records[0]
        return MemoryView(
            id=record.id,
            text=record.memory_text,
            user_id=record.user_id,
            org_id=record.org_id,
            agent_id=record.agent_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    async def search(
        self,
        query: str,
        user_id: str,
        org_id: str,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Semantic search over one user's memories, best match first."""
        if not org_id:
            raise ValidationError("org_id is required")
        if not query or not query.strip():
            raise ValidationError("query cannot be empty")

        [vector] = await self.embedder.embed([query.strip().replace("\n", " ")])
        result = await self.store.query(
            embedding=vector,
            limit=self.settings.search_default_limit if limit is None else limit,
            filters=MemoryFilters(user_id=user_id, org_id=org_id),
        )
        return [
            SearchResult(
                id=match.id,
                text=match.metadata.memory_text,
                metadata=match.metadata,
                score=match.score,
            )
            for match in result.matches
        ]

    async def update(
        self,
        memory_id: str,
        text: str,
        org_id: str,
    ) -> dict:
        """Replace a memory's text, keeping its owner and creation time."""
        if not text or not text.strip():
            raise ValidationError("text cannot be empty")

        records = await self.store.get_all_by_id([memory_id], org_id)
        if not records:
            raise NotFoundError(f"Memory {memory_id} not found", details={"id": memory_id})
        record = records[0]

        [vector] = await self.embedder.embed([text])
        await self.store.add([
            MemoryInsert(
                id=record.id,
                memory_text=text,
                user_id=record.user_id,
                org_id=record.org_id,
                agent_id=record.agent_id,
                embedding=vector,
                categories=record.categories,
            )
        ])
        logger.info("memory_updated", memory_id=memory_id, org_id=record.org_id)
        return {"message": "Memory updated successfully!"}

    async def delete(self, memory_id: str, org_id: str) -> dict:
        """Delete one memory. Deleting an unknown id is not an error."""
        deleted = await self.store.delete([memory_id], org_id)
        logger.info("memory_deleted", memory_id=memory_id, org_id=org_id, deleted=deleted)
        return {"message": "Memory deleted successfully!"}

    async def list(
        self,
        org_id: str,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        limit: Optional[int] = None,
        starting_after: Optional[str] = None,
        ending_before: Optional[str] = None,
        include_total: bool = False,
    ) -> MemoryPage:
        """List an organization's memories newest first, one page at a time."""
        if not org_id:
            raise ValidationError("org_id is required")
        return await self.store.get_by_filters(
            MemoryFilters(user_id=user_id, org_id=org_id, agent_id=agent_id),
            limit=limit,
            include_total=include_total,
            starting_after=starting_after,
            ending_before=ending_before,
        )

    async def delete_all(
        self,
        user_id: str,
        org_id: str,
        agent_id: Optional[str] = None,
    ) -> dict:
        """Delete every memory of a user in an organization."""
        if not user_id:
            raise ValidationError("user_id is required")
        if not org_id:
            raise ValidationError("org_id is required")
        deleted = await self.store.delete_by_filters(
            MemoryFilters(user_id=user_id, org_id=org_id, agent_id=agent_id)
        )
        logger.info("memories_deleted_for_user", user_id=user_id, org_id=org_id, deleted=deleted)
        return {"message": "All memories deleted successfully!", "deleted": deleted}
