# support_inbox/services/__init__.py
"""
Core Services for the Support Inbox

This package contains the integrations the agents build on:
- Support Store: sqlite persistence for threads, verifications, escalations and knowledge
- LLM Service: Google Gemini integration
- Embedding Service: sentence-transformers embeddings for duplicate detection
- Vector Index: Elasticsearch or in-memory chunk search
- Order Lookup: Shopify Admin GraphQL client
- Messaging: outbound SMTP channel
"""

from support_inbox.services.store import support_store
from support_inbox.services.llm_service import llm_service
from support_inbox.services.embedding_service import embedding_service
from support_inbox.services.vector_index import vector_index
from support_inbox.services.order_lookup import order_client
from support_inbox.services.messaging import messaging_channel

__all__ = [
    "support_store",
    "llm_service",
    "embedding_service",
    "vector_index",
    "order_client",
    "messaging_channel"
]
