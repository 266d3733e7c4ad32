from sentence_transformers import SentenceTransformer
import numpy as np
from typing import List, Optional
import asyncio
import logging
import threading
from config.settings import settings
from support_inbox.exceptions import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)


class EmbeddingService:
    def __init__(self, model_name: Optional[str] = None,
                 fallback_model_name: Optional[str] = None):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.fallback_model_name = fallback_model_name or settings.EMBEDDING_FALLBACK_MODEL
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.model = None
        self._load_lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.model_name or self.fallback_model_name)

    def _load_model(self):
        """Load the embedding model on first use, falling back to a smaller one"""
        with self._load_lock:
            if self.model is not None:
                return self.model
            try:
                self.model = SentenceTransformer(self.model_name)
                logger.info("Loaded embedding model: %s", self.model_name)
            except Exception as e:
                logger.warning("Error loading embedding model %s: %s", self.model_name, e)
                try:
                    self.model = SentenceTransformer(self.fallback_model_name)
                    logger.info("Loaded fallback embedding model: %s", self.fallback_model_name)
                except Exception as fallback_error:
                    raise ConfigurationError(
                        f"Failed to load any embedding model: {fallback_error}"
                    ) from fallback_error
            return self.model

    async def embed(self, text: str, max_chars: Optional[int] = None) -> List[float]:
        """Generate an embedding for a single text"""
        text = " ".join((text or "").split())
        if max_chars:
            text = text[:max_chars]
        if not text:
            raise ExternalServiceError("Cannot embed empty text")

        model = await asyncio.to_thread(self._load_model)
        try:
            # Run in thread to avoid blocking
            embedding = await asyncio.wait_for(
                asyncio.to_thread(model.encode, text, convert_to_numpy=True),
                timeout=self.timeout
            )
            return embedding.tolist()
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Embedding generation timed out") from e
        except Exception as e:
            raise ExternalServiceError(f"Error generating embedding: {str(e)}") from e


def cosine_similarity(embedding1: List[float], embedding2: List[float]) -> float:
    """Calculate cosine similarity between two embeddings"""
    vec1 = np.asarray(embedding1, dtype=float)
    vec2 = np.asarray(embedding2, dtype=float)

    norm1 = np.linalg.norm(vec1)
    norm2 = np.linalg.norm(vec2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(vec1, vec2) / (norm1 * norm2))


# Global embedding service instance
embedding_service = EmbeddingService()
