from elasticsearch import Elasticsearch, AsyncElasticsearch
from typing import List, Optional
import asyncio
import logging
from config.settings import settings
from support_inbox.exceptions import ExternalServiceError
from support_inbox.models.schemas import ChunkMatch

logger = logging.getLogger(__name__)


class ElasticsearchVectorIndex:
    """Chunk embeddings in an Elasticsearch dense_vector index.

    Elasticsearch reports cosine kNN scores as ``(1 + cos) / 2``; results are
    converted back to plain cosine similarity before they leave this class.
    """

    def __init__(self, es_url: Optional[str] = None, index_name: Optional[str] = None):
        self.es_url = es_url or settings.ELASTICSEARCH_URL
        self.index_name = index_name or settings.ELASTICSEARCH_CHUNK_INDEX
        self.embedding_dim = settings.EMBEDDING_DIMENSION
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.client = None
        self.async_client = None

    async def initialize(self) -> bool:
        """Initialize Elasticsearch connection"""
        try:
            self.client = Elasticsearch([self.es_url])
            self.async_client = AsyncElasticsearch([self.es_url])

            # Check connection
            info = await asyncio.to_thread(self.client.info)
            logger.info("Connected to Elasticsearch: %s", info['version']['number'])

            await self.create_index()
            return True
        except Exception as e:
            logger.error("Error connecting to Elasticsearch: %s", e)
            return False

    async def create_index(self):
        """Create the chunk index with vector search capabilities"""
        mapping = {
            "mappings": {
                "properties": {
                    "chunk_id": {"type": "keyword"},
                    "doc_id": {"type": "keyword"},
                    "content": {
                        "type": "text",
                        "analyzer": "standard"
                    },
                    "embedding": {
                        "type": "dense_vector",
                        "dims": self.embedding_dim,
                        "index": True,
                        "similarity": "cosine"
                    }
                }
            },
            "settings": {
                "number_of_shards": 1,
                "number_of_replicas": 0
            }
        }

        exists = await asyncio.to_thread(self.client.indices.exists, index=self.index_name)
        if not exists:
            await asyncio.to_thread(self.client.indices.create,
                                    index=self.index_name, body=mapping)
            logger.info("Created index: %s", self.index_name)
        else:
            logger.info("Index %s already exists", self.index_name)

    def _require_client(self):
        if self.async_client is None:
            self.async_client = AsyncElasticsearch([self.es_url])
        return self.async_client

    async def index_chunk(self, chunk_id: str, doc_id: str, content: str,
                          embedding: List[float]) -> None:
        client = self._require_client()
        try:
            await asyncio.wait_for(
                client.index(
                    index=self.index_name,
                    id=chunk_id,
                    body={
                        "chunk_id": chunk_id,
                        "doc_id": doc_id,
                        "content": content,
                        "embedding": embedding
                    }
                ),
                timeout=self.timeout
            )
        except Exception as e:
            raise ExternalServiceError(f"Error indexing chunk {chunk_id}: {e}") from e

    async def delete_doc(self, doc_id: str) -> None:
        client = self._require_client()
        try:
            await asyncio.wait_for(
                client.delete_by_query(
                    index=self.index_name,
                    body={"query": {"term": {"doc_id": doc_id}}}
                ),
                timeout=self.timeout
            )
        except Exception as e:
            raise ExternalServiceError(f"Error deleting chunks of {doc_id}: {e}") from e

    async def search(self, embedding: List[float], threshold: float,
                     top_k: int) -> List[ChunkMatch]:
        """Nearest chunks whose cosine similarity is at least ``threshold``"""
        client = self._require_client()
        query = {
            "knn": {
                "field": "embedding",
                "query_vector": embedding,
                "k": top_k,
                "num_candidates": max(100, top_k * 10),
                "similarity": threshold
            }
        }
        try:
            response = await asyncio.wait_for(
                client.search(
                    index=self.index_name,
                    body={
                        "query": query,
                        "size": top_k,
                        "_source": ["chunk_id", "doc_id"]
                    }
                ),
                timeout=self.timeout
            )
        except Exception as e:
            raise ExternalServiceError(f"Error searching similar chunks: {e}") from e

        results = []
        for hit in response["hits"]["hits"]:
            source = hit["_source"]
            similarity = 2 * float(hit["_score"]) - 1
            if similarity < threshold:
                continue
            results.append(ChunkMatch(
                chunk_id=source["chunk_id"],
                doc_id=source["doc_id"],
                similarity=similarity
            ))
        return results

    async def close(self):
        """Close Elasticsearch connections"""
        if self.async_client:
            await self.async_client.close()
