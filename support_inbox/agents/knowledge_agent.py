from typing import List, Optional
import logging
from support_inbox.models.schemas import (
    AgentInstruction, DuplicateCheckResult, KnowledgeChunk, KnowledgeDocument
)
from support_inbox.services.chunking import chunk_markdown
from support_inbox.services.embedding_service import EmbeddingService, embedding_service
from support_inbox.services.store import SupportStore, new_id, support_store
from support_inbox.services.vector_index import vector_index
from config.settings import settings

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Agent responsible for comparing new content against published knowledge"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 embeddings: Optional[EmbeddingService] = None,
                 index=None):
        self.name = "Duplicate Detector"
        self.store = store or support_store
        self.embeddings = embeddings or embedding_service
        self.index = index if index is not None else vector_index
        self.retrieval_floor = settings.DUPLICATE_RETRIEVAL_FLOOR
        self.hard_duplicate_similarity = settings.HARD_DUPLICATE_SIMILARITY
        self.match_count = settings.DUPLICATE_MATCH_COUNT
        self.max_chars = settings.DUPLICATE_CHECK_MAX_CHARS

    async def check(self, content: str) -> DuplicateCheckResult:
        """
        Find the closest published chunk and report its document.
        ``checked`` is False when the comparison could not run at all.
        """
        if not self.embeddings.is_configured():
            return DuplicateCheckResult(checked=False)

        try:
            embedding = await self.embeddings.embed(content, max_chars=self.max_chars)
            matches = await self.index.search(embedding, self.retrieval_floor, self.match_count)
        except Exception as e:
            logger.error("Duplicate check failed: %s", e)
            return DuplicateCheckResult(checked=False)

        if not matches:
            return DuplicateCheckResult()

        top_match = max(matches, key=lambda m: m.similarity)
        doc = self.store.get_kb_doc(top_match.doc_id)

        return DuplicateCheckResult(
            is_duplicate=top_match.similarity > self.hard_duplicate_similarity,
            similarity=top_match.similarity,
            existing_doc_id=doc.id if doc else top_match.doc_id,
            existing_doc_title=doc.title if doc else None
        )


class KnowledgePublisher:
    """Agent responsible for writing approved knowledge into the KB and instruction set"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 embeddings: Optional[EmbeddingService] = None,
                 index=None):
        self.name = "Knowledge Publisher"
        self.store = store or support_store
        self.embeddings = embeddings or embedding_service
        self.index = index if index is not None else vector_index

    async def publish_kb_article(self, title: str, body: str,
                                 source: str = "learning_proposal",
                                 source_id: Optional[str] = None,
                                 intent_tags: Optional[List[str]] = None) -> KnowledgeDocument:
        """
        Store the document, chunk it and index every chunk embedding.
        A failure at any step removes the partial document and re-raises.
        """
        doc = self.store.insert_kb_doc(KnowledgeDocument(
            id=new_id(),
            title=title,
            body=body,
            source=source,
            source_id=source_id,
            intent_tags=intent_tags or []
        ))

        try:
            chunks = chunk_markdown(body)
            for piece in chunks:
                chunk = self.store.insert_kb_chunk(KnowledgeChunk(
                    id=new_id(),
                    doc_id=doc.id,
                    chunk_index=piece.index,
                    content=piece.content
                ))
                embedding = await self.embeddings.embed(piece.content)
                await self.index.index_chunk(chunk.id, doc.id, chunk.content, embedding)
        except Exception:
            logger.error("Publishing KB article %r failed, rolling back", title)
            self.store.delete_kb_doc(doc.id)
            try:
                await self.index.delete_doc(doc.id)
            except Exception as cleanup_error:
                logger.warning("Could not remove indexed chunks of %s: %s", doc.id, cleanup_error)
            raise

        logger.info("Published KB article %s with %d chunks", doc.id, len(chunks))
        return doc

    def append_instruction(self, section: str, content: str,
                           title: Optional[str] = None,
                           rationale: Optional[str] = None,
                           category: str = "learned") -> AgentInstruction:
        if not content or not content.strip():
            raise ValueError("Instruction content is empty")
        instruction = self.store.insert_instruction(AgentInstruction(
            id=new_id(),
            section=section,
            title=title or content.strip().splitlines()[0][:80],
            content=content.strip(),
            rationale=rationale,
            category=category
        ))
        logger.info("Appended instruction %s to section %s", instruction.id, section)
        return instruction

    def publish_instruction(self, title: str, content: str,
                            rationale: Optional[str] = None) -> AgentInstruction:
        return self.append_instruction(
            section=settings.LEARNED_INSTRUCTION_SECTION,
            content=content,
            title=title,
            rationale=rationale
        )


# Global knowledge agent instances
duplicate_detector = DuplicateDetector()
knowledge_publisher = KnowledgePublisher()
