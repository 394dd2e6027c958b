"""Embedding provider abstraction."""

import asyncio
import logging
from typing import Any, Optional

import numpy as np
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from clara_ingest.core.config import Settings, settings
from clara_ingest.core.errors import ConfigurationError, EmbeddingError
from clara_ingest.ingestion.models import Embedding

logger = logging.getLogger(__name__)

# Map model names to vector sizes
OPENAI_MODEL_SIZES = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProvider:
    """Abstract embedding provider.

    Subclasses implement the blocking ``get_embeddings``; ``embed`` runs it
    off the event loop and converts any failure into ``EmbeddingError``.
    """

    def __init__(self):
        self.model_name = ""
        self.vector_size = 0

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings for a list of texts."""
        raise NotImplementedError

    def get_embedding(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        return self.get_embeddings([text])[0]

    async def embed(self, text: str, model: Optional[str] = None) -> Embedding:
        if model and model != self.model_name:
            logger.debug(f"Ignoring requested model {model}, provider is bound to {self.model_name}")
        try:
            vector = await asyncio.to_thread(self.get_embedding, text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"{type(self).__name__} failed: {e}") from e
        values = [float(v) for v in vector]
        return Embedding(vector=values, dimensions=len(values))


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embedding provider."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None, client: Any = None):
        super().__init__()
        self.client = client or OpenAI(api_key=api_key or settings.openai_api_key)
        self.model_name = model_name or settings.openai_embed_model
        self.vector_size = OPENAI_MODEL_SIZES.get(self.model_name, 1536)

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings using OpenAI API."""
        try:
            response = self.client.embeddings.create(
                model=self.model_name,
                input=texts,
            )
        except Exception as e:
            logger.error(f"Error generating OpenAI embeddings: {e}")
            raise EmbeddingError(f"OpenAI embeddings request failed: {e}") from e
        embeddings = [item.embedding for item in response.data]
        if len(embeddings) != len(texts):
            raise EmbeddingError(f"OpenAI returned {len(embeddings)} embeddings for {len(texts)} inputs")
        return np.array(embeddings, dtype=np.float32)


class LocalEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers embedding provider."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", model: Any = None):
        super().__init__()
        self.model_name = model_name
        if model is None:
            logger.info(f"Loading local embedding model: {model_name}")
            model = SentenceTransformer(model_name)
        self.model = model
        self.vector_size = self.model.get_sentence_embedding_dimension()

    def get_embeddings(self, texts: list[str]) -> np.ndarray:
        """Generate embeddings using local model."""
        try:
            embeddings = self.model.encode(texts, show_progress_bar=False, convert_to_numpy=True)
        except Exception as e:
            logger.error(f"Error generating local embeddings: {e}")
            raise EmbeddingError(f"Local embedding model failed: {e}") from e
        return np.asarray(embeddings, dtype=np.float32)


def get_embedding_provider(config: Optional[Settings] = None) -> EmbeddingProvider:
    """Get configured embedding provider."""
    config = config or settings
    if config.embeddings_provider == "openai":
        if not config.openai_api_key:
            if config.is_production:
                raise ConfigurationError("OPENAI_API_KEY is required for the openai embeddings provider")
            logger.warning("OpenAI API key not set, falling back to local embeddings")
            return LocalEmbeddingProvider(config.local_embed_model)
        return OpenAIEmbeddingProvider(config.openai_api_key, config.openai_embed_model)
    return LocalEmbeddingProvider(config.local_embed_model)
