import logging
import threading
from typing import Dict, List, Tuple

import numpy as np

from config.settings import settings
from support_inbox.models.schemas import ChunkMatch
from support_inbox.services.elasticsearch_service import ElasticsearchVectorIndex

logger = logging.getLogger(__name__)


class InMemoryVectorIndex:
    """Process-local cosine search over chunk embeddings"""

    def __init__(self):
        self._vectors: Dict[str, Tuple[str, np.ndarray]] = {}
        self._lock = threading.Lock()

    async def initialize(self) -> bool:
        return True

    async def index_chunk(self, chunk_id: str, doc_id: str, content: str,
                          embedding: List[float]) -> None:
        vector = np.asarray(embedding, dtype=float)
        norm = np.linalg.norm(vector)
        if norm:
            vector = vector / norm
        with self._lock:
            self._vectors[chunk_id] = (doc_id, vector)

    async def delete_doc(self, doc_id: str) -> None:
        with self._lock:
            for chunk_id in [c for c, (d, _) in self._vectors.items() if d == doc_id]:
                del self._vectors[chunk_id]

    async def search(self, embedding: List[float], threshold: float,
                     top_k: int) -> List[ChunkMatch]:
        query = np.asarray(embedding, dtype=float)
        norm = np.linalg.norm(query)
        if not norm:
            return []
        query = query / norm

        with self._lock:
            items = list(self._vectors.items())

        scored = [
            ChunkMatch(chunk_id=chunk_id, doc_id=doc_id, similarity=float(np.dot(query, vector)))
            for chunk_id, (doc_id, vector) in items
        ]
        scored = [m for m in scored if m.similarity >= threshold]
        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:top_k]

    async def close(self):
        return None

    @property
    def size(self) -> int:
        return len(self._vectors)


def get_vector_index():
    """Build the vector index selected by ``VECTOR_BACKEND``"""
    backend = settings.VECTOR_BACKEND.lower()
    if backend == "memory":
        return InMemoryVectorIndex()
    if backend != "elasticsearch":
        logger.warning("Unknown VECTOR_BACKEND %r, using elasticsearch", settings.VECTOR_BACKEND)
    return ElasticsearchVectorIndex()


# Global vector index instance
vector_index = get_vector_index()
