"""
OpenAI-backed embedding and completion services.

Vendor errors are translated into the package error taxonomy so the
pipelines can tell transient outages from bad input or bad credentials.
"""

import time
import logging
from typing import Iterable, List, Optional, Set

import openai
from openai import OpenAI
from pydantic import BaseModel

from src.config.settings import Settings
from src.core.exceptions import ConfigurationError, DocumentDataError, PipelineError, TransientServiceError

logger = logging.getLogger(__name__)

# Output dimension of the supported embedding models
EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingBatch(BaseModel):
    vectors: List[List[float]]
    tokens_used: int = 0
    model: str


class Completion(BaseModel):
    text: str
    tokens_used: int = 0
    model: str


def create_openai_client(settings: Settings) -> OpenAI:
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    # Retries are handled by the pipelines, not inside the SDK
    return OpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout, max_retries=0)


def translate_openai_error(error: Exception, operation: str) -> PipelineError:
    """Map an OpenAI SDK exception onto the error taxonomy."""
    if isinstance(error, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return TransientServiceError(f"OpenAI {operation} failed: {error}", service="openai")
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ConfigurationError(f"OpenAI rejected credentials during {operation}: {error}")
    if isinstance(error, openai.APIStatusError):
        if error.status_code in (408, 409, 429) or error.status_code >= 500:
            return TransientServiceError(f"OpenAI {operation} failed: {error}", service="openai")
        return DocumentDataError(f"OpenAI rejected {operation}: {error}")
    return TransientServiceError(f"OpenAI {operation} failed: {error}", service="openai")


class EmbeddingClient:
    def __init__(self, client: OpenAI, model: str = "text-embedding-3-small"):
        """
        Initialize the embedding client.

        Args:
            client: OpenAI SDK client
            model: Embedding model (default: text-embedding-3-small)
        """
        self.client = client
        self.model = model

    @property
    def dimension(self) -> int:
        return EMBEDDING_DIMENSIONS.get(self.model, 1536)

    def embed(self, texts: List[str]) -> EmbeddingBatch:
        """Embed a batch of texts; vectors come back in input order."""
        if not texts:
            raise DocumentDataError("No texts provided for embedding")
        if any(not text or not text.strip() for text in texts):
            raise DocumentDataError("Cannot embed empty text")

        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, "embedding")

        ordered = sorted(response.data, key=lambda item: item.index)
        tokens_used = response.usage.total_tokens if response.usage else 0
        return EmbeddingBatch(
            vectors=[list(item.embedding) for item in ordered],
            tokens_used=tokens_used,
            model=self.model,
        )

    def embed_query(self, text: str) -> EmbeddingBatch:
        return self.embed([text])


class CompletionClient:
    """
    Chat completion client.

    Some models only accept their default temperature; for those the
    parameter is left out of the request.
    """

    def __init__(self, client: OpenAI, model: str = "gpt-4o", temperature: float = 0.1,
                 max_tokens: int = 1000, fixed_temperature_models: Optional[Iterable[str]] = None):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.fixed_temperature_models: Set[str] = set(
            fixed_temperature_models or ("o3", "gpt-5", "gpt-5-mini", "gpt-5-nano")
        )

    def supports_temperature(self, model: Optional[str] = None) -> bool:
        model = model or self.model
        for restricted in self.fixed_temperature_models:
            if model == restricted or model.startswith(f"{restricted}-"):
                return False
        return True

    def _request_options(self, model: str) -> dict:
        if self.supports_temperature(model):
            return {"temperature": self.temperature, "max_tokens": self.max_tokens}
        return {"max_completion_tokens": self.max_tokens}

    def complete(self, system_prompt: str, user_message: str, model: Optional[str] = None) -> Completion:
        """
        Run one completion.

        Args:
            system_prompt: Instructions and retrieved context
            user_message: The user's question
            model: Override of the configured model

        Returns:
            Completion text and token usage
        """
        model = model or self.model
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]

        start_time = time.time()
        try:
            response = self.client.chat.completions.create(model=model, messages=messages, **self._request_options(model))
        except openai.BadRequestError as e:
            if "temperature" not in str(e).lower() or not self.supports_temperature(model):
                raise translate_openai_error(e, "completion")
            # The model refused a custom temperature; remember that and retry once without it
            logger.warning(f"Model {model} does not accept a custom temperature, retrying with its default")
            self.fixed_temperature_models.add(model)
            try:
                response = self.client.chat.completions.create(model=model, messages=messages, **self._request_options(model))
            except openai.OpenAIError as retry_error:
                raise translate_openai_error(retry_error, "completion")
        except openai.OpenAIError as e:
            raise translate_openai_error(e, "completion")

        text = response.choices[0].message.content or "" if response.choices else ""
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.info(f"Completion from {model} in {time.time() - start_time:.2f}s ({tokens_used} tokens)")
        return Completion(text=text, tokens_used=tokens_used, model=model)
