"""
Embedding collaborators.

``embed(text) -> vector`` is the only contract the pipeline relies on.
"""

from abc import ABC, abstractmethod
from typing import Optional

import openai
from openai import OpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from bookmark_weaver.config import get_logger, get_settings
from bookmark_weaver.pipeline.errors import EmbeddingConfigurationError

logger = get_logger(__name__)

# Keeps requests well under the model's input token limit
MAX_EMBEDDING_CHARS = 8000


class Embedder(ABC):
    """Abstract base for text embedding backends."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector
        """
        pass


class OpenAIEmbedder(Embedder):
    """Embeds text with the OpenAI embeddings API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[OpenAI] = None,
    ):
        """
        Initialize the OpenAI embedder.

        Args:
            api_key: OpenAI API key. If not provided, loaded from config.
            model: Embedding model name. If not provided, loaded from config.
            timeout: Request timeout in seconds
            client: Optional pre-built OpenAI client

        Raises:
            EmbeddingConfigurationError: If no API key is available
        """
        settings = get_settings()
        self.model = model or settings.openai_embedding_model

        if client is not None:
            self.client = client
        else:
            api_key = api_key or settings.openai_api_key
            if not api_key:
                raise EmbeddingConfigurationError("OPENAI_API_KEY is not configured")
            self.client = OpenAI(
                api_key=api_key,
                timeout=timeout or settings.embedding_timeout_seconds,
                max_retries=0,
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=1, max=20),
        retry=retry_if_exception_type((openai.RateLimitError, openai.APITimeoutError)),
        reraise=True,
    )
    def embed(self, text: str) -> list[float]:
        """Embed text, retrying briefly on rate limits and timeouts."""
        response = self.client.embeddings.create(
            model=self.model,
            input=text[:MAX_EMBEDDING_CHARS],
        )
        return response.data[0].embedding
