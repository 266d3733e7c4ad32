import re
from typing import Dict, List, Optional

import pytest

from support_inbox.agents.escalation_agent import EscalationNotifier
from support_inbox.agents.knowledge_agent import DuplicateDetector, KnowledgePublisher
from support_inbox.agents.learning_agent import AutoApprovalPolicy, LearningProposalPipeline
from support_inbox.agents.resolution_agent import DraftAgent
from support_inbox.agents.response_router import EscalationResponseRouter
from support_inbox.agents.verification_agent import VerificationGate
from support_inbox.exceptions import ExternalServiceError
from support_inbox.models.schemas import (
    Customer, Message, MessageDirection, MessageRole, Order, Thread, ThreadState
)
from support_inbox.services.embedding_service import EmbeddingService
from support_inbox.services.flag_checker import NegativeFlagChecker
from support_inbox.services.llm_service import GeminiLLMService
from support_inbox.services.messaging import MessagingChannel
from support_inbox.services.order_lookup import OrderLookupClient
from support_inbox.services.store import SupportStore, new_id
from support_inbox.services.text_patterns import IdentifierExtractor
from support_inbox.services.vector_index import InMemoryVectorIndex
from support_inbox.workflows.state_machine import ThreadStateMachine
from support_inbox.workflows.support_workflow import SupportInboxWorkflow

SUPERVISOR = "lead@example.com"
EMBEDDING_DIM = 32
WORD_PATTERN = re.compile(r"[a-z0-9]+")


class FakeLLM(GeminiLLMService):
    """Returns scripted responses in order; an Exception entry is raised"""

    def __init__(self, responses: Optional[list] = None, configured: bool = True):
        super().__init__(api_key="test-key" if configured else "")
        self.responses = list(responses or [])
        self.calls: List[Dict] = []

    async def generate_response(self, prompt, system_prompt=None, **kwargs):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, **kwargs})
        if not self.responses:
            raise ExternalServiceError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmbeddings(EmbeddingService):
    """Bag-of-words vectors; ``vectors`` pins exact vectors by substring"""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None,
                 configured: bool = True):
        super().__init__()
        self.vectors = vectors or {}
        self.configured = configured
        self.calls: List[str] = []

    def is_configured(self) -> bool:
        return self.configured

    async def embed(self, text, max_chars=None):
        if max_chars:
            text = text[:max_chars]
        self.calls.append(text)
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        vector = [0.0] * EMBEDDING_DIM
        for word in WORD_PATTERN.findall(text.lower()):
            vector[sum(ord(c) for c in word) % EMBEDDING_DIM] += 1.0
        return vector


class FakeOrderClient(OrderLookupClient):
    def __init__(self, configured: bool = True):
        self.configured = configured
        self.orders: Dict[str, Order] = {}
        self.customers: Dict[str, Customer] = {}
        self.order_calls: List[str] = []
        self.customer_calls: List[str] = []
        self.error: Optional[Exception] = None

    def is_configured(self) -> bool:
        return self.configured

    async def get_order_by_number(self, order_number):
        self.order_calls.append(order_number)
        if self.error:
            raise self.error
        return self.orders.get(order_number)

    async def get_customer_by_email(self, email):
        self.customer_calls.append(email)
        return self.customers.get(email)


class FakeChannel(MessagingChannel):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict] = []
        self.labels: List[tuple] = []

    def is_configured(self) -> bool:
        return True

    async def send(self, to, subject, html_body, thread_ref=None):
        if self.fail:
            raise ExternalServiceError("SMTP send failed: connection refused")
        self.sent.append({"to": to, "subject": subject, "html_body": html_body,
                          "thread_ref": thread_ref})
        return f"<msg-{len(self.sent)}@test>"

    async def apply_label(self, thread_ref, label):
        self.labels.append((thread_ref, label))
        return True


@pytest.fixture
def store():
    support_store = SupportStore(":memory:")
    yield support_store
    support_store.close()


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def fake_orders():
    return FakeOrderClient()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def detector(store, embeddings, index):
    return DuplicateDetector(store, embeddings, index)


@pytest.fixture
def publisher(store, embeddings, index):
    return KnowledgePublisher(store, embeddings, index)


@pytest.fixture
def pipeline(store, llm, detector, publisher):
    return LearningProposalPipeline(store, llm, detector, publisher,
                                    AutoApprovalPolicy.from_settings())


@pytest.fixture
def notifier(store, fake_channel):
    return EscalationNotifier(store, fake_channel, supervisor_email=SUPERVISOR)


@pytest.fixture
def machine(store, notifier, pipeline):
    return ThreadStateMachine(store, notifier, pipeline, min_confidence=0.3)


@pytest.fixture
def drafts(store, llm):
    return DraftAgent(store, llm)


@pytest.fixture
def gate(store, fake_orders):
    return VerificationGate(store, fake_orders, IdentifierExtractor(),
                            NegativeFlagChecker(), auto_verify_without_lookup=False)


@pytest.fixture
def router(store, machine, drafts, pipeline, publisher):
    return EscalationResponseRouter(store, machine, drafts, pipeline, publisher,
                                    supervisor_email=SUPERVISOR)


@pytest.fixture
def workflow(store, gate, machine, router, drafts):
    return SupportInboxWorkflow(store, gate, machine, router, drafts)


@pytest.fixture
def make_thread(store):
    def _make_thread(thread_id: Optional[str] = None,
                     state: ThreadState = ThreadState.NEW, **fields) -> Thread:
        thread = store.create_thread(Thread(
            id=thread_id or new_id(),
            subject=fields.pop("subject", "Where is my order?"),
            customer_email=fields.pop("customer_email", "jane@customer.com"),
            **fields
        ))
        if state != ThreadState.NEW:
            store.compare_and_set_thread(thread.id, thread.version, {"state": state})
        return store.get_thread(thread.id)
    return _make_thread


@pytest.fixture
def add_message(store):
    def _add_message(thread_id: str, body: str,
                     role: MessageRole = MessageRole.CUSTOMER) -> Message:
        direction = MessageDirection.INBOUND if role == MessageRole.CUSTOMER else MessageDirection.OUTBOUND
        return store.add_message(Message(
            id=new_id(),
            thread_id=thread_id,
            direction=direction,
            role=role,
            from_email="jane@customer.com" if role == MessageRole.CUSTOMER else "support@example.com",
            body_text=body
        ))
    return _add_message


def make_order(name: str = "#1001", tags=None, note=None, email="jane@customer.com",
               customer_tags=None, customer_note=None) -> Order:
    return Order(
        id=f"gid://shopify/Order/{name.lstrip('#')}",
        name=name,
        email=email,
        financial_status="PAID",
        fulfillment_status="FULFILLED",
        tags=tags or [],
        note=note,
        customer=Customer(
            id="gid://shopify/Customer/7",
            email=email,
            first_name="Jane",
            last_name="Doe",
            orders_count=3,
            total_spent=240.5,
            tags=customer_tags or [],
            note=customer_note
        )
    )


@pytest.fixture
def order_factory():
    return make_order
