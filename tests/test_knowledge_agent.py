import pytest

from support_inbox.agents.knowledge_agent import DuplicateDetector, KnowledgePublisher
from support_inbox.exceptions import ExternalServiceError
from support_inbox.services.vector_index import InMemoryVectorIndex

from conftest import EMBEDDING_DIM, FakeEmbeddings


def vector(x, y):
    return [x, y] + [0.0] * (EMBEDDING_DIM - 2)


@pytest.fixture
def pinned_embeddings():
    return FakeEmbeddings(vectors={
        "Returns window": vector(1.0, 0.0),
        "Near copy": vector(0.9, 0.3),
        "Related topic": vector(0.8, 0.6),
        "Unrelated topic": vector(0.0, 1.0),
    })


@pytest.fixture
def pinned(store, pinned_embeddings, index):
    return (DuplicateDetector(store, pinned_embeddings, index),
            KnowledgePublisher(store, pinned_embeddings, index))


class BrokenIndex(InMemoryVectorIndex):
    async def index_chunk(self, chunk_id, doc_id, content, embedding):
        raise ExternalServiceError("index unavailable")

    async def search(self, embedding, threshold, top_k):
        raise ExternalServiceError("index unavailable")


async def test_near_copy_is_duplicate(pinned):
    detector, publisher = pinned
    doc = await publisher.publish_kb_article("Returns", "Returns window: 30 days from delivery.")

    result = await detector.check("Near copy of the returns article")

    assert result.checked
    assert result.is_duplicate
    assert result.similarity == pytest.approx(0.949, abs=0.001)
    assert result.existing_doc_id == doc.id
    assert result.existing_doc_title == "Returns"


async def test_related_content_is_reported_but_not_duplicate(pinned):
    detector, publisher = pinned
    await publisher.publish_kb_article("Returns", "Returns window: 30 days from delivery.")

    result = await detector.check("Related topic about exchanges")

    assert not result.is_duplicate
    assert result.similarity == pytest.approx(0.8)


async def test_unrelated_content_has_no_match(pinned):
    detector, publisher = pinned
    await publisher.publish_kb_article("Returns", "Returns window: 30 days from delivery.")

    result = await detector.check("Unrelated topic about firmware")

    assert result.checked
    assert not result.is_duplicate
    assert result.similarity == 0.0
    assert result.existing_doc_id is None


async def test_check_without_embeddings_is_unchecked(store, index):
    detector = DuplicateDetector(store, FakeEmbeddings(configured=False), index)

    result = await detector.check("anything")

    assert not result.checked
    assert not result.is_duplicate


async def test_check_with_failing_index_is_unchecked(store, embeddings):
    detector = DuplicateDetector(store, embeddings, BrokenIndex())

    result = await detector.check("anything")

    assert not result.checked


async def test_publish_chunks_and_indexes(publisher, store, index):
    section = "Hold the reset button until the light blinks, then pair the hub from the app again. "
    body = f"# Pairing\n\n{section * 2}\n\n## Firmware\n\n{section * 2}"

    doc = await publisher.publish_kb_article("Hub help", body, source="seed",
                                             intent_tags=["PRODUCT_SUPPORT"])

    chunks = store.list_kb_chunks(doc.id)
    assert len(chunks) == 2
    assert chunks[0].content.startswith("# Pairing")
    assert chunks[1].content.startswith("## Firmware")
    assert index.size == 2
    assert store.get_kb_doc(doc.id).source == "seed"


async def test_publish_failure_rolls_back(store, embeddings):
    publisher = KnowledgePublisher(store, embeddings, BrokenIndex())

    with pytest.raises(ExternalServiceError):
        await publisher.publish_kb_article("Returns", "Returns window: 30 days.",
                                           intent_tags=["RETURN_REFUND_REQUEST"])

    assert store.list_published_doc_titles("RETURN_REFUND_REQUEST", 10) == []


def test_append_instruction(publisher, store):
    instruction = publisher.append_instruction(
        "escalation_learnings", "  Offer a replacement for cracked cases\nNo refund needed  ",
        category="escalation"
    )

    assert instruction.title == "Offer a replacement for cracked cases"
    assert instruction.content == "Offer a replacement for cracked cases\nNo refund needed"
    assert store.list_instructions("escalation_learnings")[0].category == "escalation"


def test_append_empty_instruction_fails(publisher):
    with pytest.raises(ValueError):
        publisher.append_instruction("escalation_learnings", "   ")
