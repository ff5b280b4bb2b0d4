"""Typed records exchanged between the store, the LLM and the memory system."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Conversation
# =============================================================================

class Message(BaseModel):
    """A single chat message."""

    role: Literal["system", "user", "assistant"]
    content: str


# =============================================================================
# Store inputs
# =============================================================================

@dataclass
class MemoryInsert:
    """Row to insert or upsert.

    ``id`` selects the upsert path; ``embedding`` may be left out and is then
    computed by the store's embedder from ``memory_text``.
    """
    memory_text: str
    user_id: str
    org_id: str
    agent_id: str = ""
    id: Optional[str] = None
    embedding: Optional[list[float]] = None
    categories: Optional[list[str]] = None


@dataclass
class MemoryFilters:
    """Conjunctive equality filters. ``None`` means "do not filter".

    ``agent_id=""`` selects memories that belong to no agent.
    """
    user_id: Optional[str] = None
    org_id: Optional[str] = None
    agent_id: Optional[str] = None

    def items(self) -> list[tuple[str, str]]:
        conditions = [
            (name, value)
            for name, value in (("user_id", self.user_id), ("org_id", self.org_id))
            if value
        ]
        if self.agent_id is not None:
            conditions.append(("agent_id", self.agent_id))
        return conditions


# =============================================================================
# Store outputs
# =============================================================================

class MatchMetadata(BaseModel):
    user_id: str
    org_id: str
    agent_id: str
    memory_text: str
    categories: Optional[list[str]] = None


class MemoryMatch(BaseModel):
    id: str
    score: float
    metadata: MatchMetadata


class QueryResult(BaseModel):
    matches: list[MemoryMatch] = Field(default_factory=list)


class MemoryRecord(BaseModel):
    """A stored memory without its embedding."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    org_id: str
    agent_id: str
    memory_text: str
    categories: Optional[list[str]] = None
    created_at: datetime
    updated_at: datetime


class MemoryPage(BaseModel):
    data: list[MemoryRecord]
    has_more: bool
    total: Optional[int] = None


# =============================================================================
# Memory system outputs
# =============================================================================

class MemoryView(BaseModel):
    id: str
    text: str
    user_id: str
    org_id: str
    agent_id: str
    created_at: datetime
    updated_at: datetime


class SearchResult(BaseModel):
    id: str
    text: str
    metadata: MatchMetadata
    score: float


class AddOperation(BaseModel):
    type: Literal["ADD"] = "ADD"
    id: str
    text: str


class UpdateOperation(BaseModel):
    type: Literal["UPDATE"] = "UPDATE"
    id: str
    old_text: Optional[str] = Field(default=None, serialization_alias="oldText")
    new_text: str = Field(serialization_alias="newText")


class DeleteOperation(BaseModel):
    type: Literal["DELETE"] = "DELETE"
    id: str


MemoryOperation = Annotated[
    Union[AddOperation, UpdateOperation, DeleteOperation],
    Field(discriminator="type"),
]


class SkippedInstruction(BaseModel):
    """An UPDATE/DELETE the model emitted that could not be applied to a live memory."""

    event: Literal["UPDATE", "DELETE"]
    index: Optional[str] = None
    text: str
    reason: Literal["missing_id", "unknown_index", "already_deleted"]


class ReconciliationResult(BaseModel):
    operations: list[MemoryOperation] = Field(default_factory=list)
    skipped: list[SkippedInstruction] = Field(default_factory=list)


# =============================================================================
# Structured LLM schemas
# =============================================================================

class Fact(BaseModel):
    fact: str
    categories: Optional[list[str]] = None


class FactList(BaseModel):
    """Output of the fact-extraction step."""

    facts: list[Fact] = Field(default_factory=list)


class MemoryUpdate(BaseModel):
    id: Optional[str] = None
    text: str
    event: Literal["ADD", "UPDATE", "DELETE", "NONE"]
    old_memory: Optional[str] = None


class MemoryUpdateList(BaseModel):
    """Output of the reconciliation step."""

    memory: list[MemoryUpdate] = Field(default_factory=list)


# =============================================================================
# Ephemeral index map
# =============================================================================

@dataclass
class IndexMap:
    """Two-way lookup between the small indices shown to the LLM and real ids.

    Indices are assigned sequentially as strings ("0", "1", ...) in the order
    ids are registered; registering the same id twice keeps its first index.
    """
    _by_index: dict[str, str] = field(default_factory=dict)
    _by_id: dict[str, str] = field(default_factory=dict)

    def register(self, memory_id: str) -> str:
        existing = self._by_id.get(memory_id)
        if existing is not None:
            return existing
        index = str(len(self._by_index))
        self._by_index[index] = memory_id
        self._by_id[memory_id] = index
        return index

    def resolve(self, index: Optional[str]) -> Optional[str]:
        if index is None:
            return None
        return self._by_index.get(index.strip())

    def index_of(self, memory_id: str) -> Optional[str]:
        return self._by_id.get(memory_id)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_index)

    def as_dict(self) -> dict[str, Any]:
        return dict(self._by_index)
