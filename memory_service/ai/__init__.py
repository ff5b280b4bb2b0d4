"""Embedding and text-generation providers, and the prompts sent to them."""

from .embeddings import EmbeddingConfig, EmbeddingProvider, OpenAIEmbeddingProvider
from .llm import OpenAITextGenerator, TextGenerator
from .prompts import FACT_EXTRACTION_PROMPT, memory_update_messages

__all__ = [
    "EmbeddingConfig",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "OpenAITextGenerator",
    "TextGenerator",
    "FACT_EXTRACTION_PROMPT",
    "memory_update_messages",
]
