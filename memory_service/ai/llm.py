"""Structured text generation.

The memory system only ever needs one thing from a language model: given a
message sequence, return an object that validates against a pydantic model.
``OpenAITextGenerator`` does this with JSON-schema constrained decoding and
validates the reply before handing it back.
"""

from typing import Optional, Protocol, Sequence, TypeVar

import openai
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from memory_service.config.settings import get_settings
from memory_service.errors import UpstreamError
from memory_service.memory.types import Message

logger = structlog.get_logger()

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class TextGenerator(Protocol):
    """Structured-decoding language model."""

    async def generate(
        self,
        messages: Sequence[Message],
        schema: type[SchemaT],
        model: Optional[str] = None,
    ) -> SchemaT:
        ...


class OpenAITextGenerator:
    """Chat-completions client constrained to a pydantic schema."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        base_url: Optional[str] = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key.get_secret_value()
        self._base_url = base_url or settings.openai_base_url
        self.model = model or settings.openai_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise UpstreamError("OPENAI_API_KEY is required for text generation")
            self._client = openai.AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    @staticmethod
    def response_format(schema: type[BaseModel]) -> dict:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": schema.__name__,
                "schema": schema.model_json_schema(),
            },
        }

    async def generate(
        self,
        messages: Sequence[Message],
        schema: type[SchemaT],
        model: Optional[str] = None,
    ) -> SchemaT:
        model = model or self.model
        try:
            completion = await self.client.chat.completions.create(
                model=model,
                messages=[m.model_dump() for m in messages],
                response_format=self.response_format(schema),
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.OpenAIError as e:
            logger.error("generation_request_failed", error=str(e), model=model, schema=schema.__name__)
            raise UpstreamError(f"Text generation failed: {e}") from e

        if not completion.choices:
            raise UpstreamError("Text generation returned no choices")
        content = completion.choices[0].message.content
        if not content:
            raise UpstreamError(
                "Text generation returned an empty response",
                details={"finish_reason": completion.choices[0].finish_reason},
            )

        try:
            return schema.model_validate_json(content)
        except PydanticValidationError as e:
            logger.warning("generation_schema_mismatch", model=model, schema=schema.__name__, errors=e.error_count())
            raise UpstreamError(
                f"Text generation response does not match {schema.__name__}",
                details={"errors": e.errors(include_url=False)},
            ) from e
