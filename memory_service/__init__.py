"""Memory Service - conversational memory with LLM-driven reconciliation."""

__version__ = "0.1.0"

from .memory.memory_system import MemorySystem
from .memory.storage import MemoryStore
from .services.prompt import PromptService
from .ai.embeddings import OpenAIEmbeddingProvider
from .ai.llm import OpenAITextGenerator
from .errors import (
    MemoryServiceError,
    NotFoundError,
    StorageError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "MemorySystem",
    "MemoryStore",
    "PromptService",
    "OpenAIEmbeddingProvider",
    "OpenAITextGenerator",
    "MemoryServiceError",
    "NotFoundError",
    "StorageError",
    "UpstreamError",
    "ValidationError",
]
