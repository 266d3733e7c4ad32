from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ThreadState(str, Enum):
    NEW = "NEW"
    AWAITING_INFO = "AWAITING_INFO"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    HUMAN_HANDLING = "HUMAN_HANDLING"
    RESOLVED = "RESOLVED"


class TransitionTrigger(str, Enum):
    NEEDS_INFO = "needs_info"
    ESCALATION_POLICY = "escalation_policy"
    SUPERVISOR_TAKEOVER = "supervisor_takeover"
    SUPERVISOR_RESOLVE = "supervisor_resolve"
    AGENT_RESOLUTION = "agent_resolution"
    CUSTOMER_CLOSED = "customer_closed"
    INBOUND_MESSAGE = "inbound_message"
    DRAFT_READY = "draft_ready"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    FLAGGED = "flagged"
    MISMATCH = "mismatch"


class ResponseType(str, Enum):
    INSTRUCTION = "instruction"
    RESOLVE = "resolve"
    DRAFT = "draft"
    RELAY = "relay"
    TAKEOVER = "takeover"


class ProposalType(str, Enum):
    KB_ARTICLE = "kb_article"
    INSTRUCTION_UPDATE = "instruction_update"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SUPERVISOR = "supervisor"
    DRAFT = "draft"


# ---------------------------------------------------------------------------
# Threads and messages
# ---------------------------------------------------------------------------

class Thread(BaseModel):
    id: str
    subject: Optional[str] = None
    customer_email: Optional[str] = None
    provider_thread_ref: Optional[str] = None
    state: ThreadState = ThreadState.NEW
    last_intent: Optional[str] = None
    verification_status: Optional[VerificationStatus] = None
    verified_at: Optional[datetime] = None
    human_handling: bool = False
    human_handler: Optional[str] = None
    human_handling_started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


class Message(BaseModel):
    id: str
    thread_id: str
    direction: MessageDirection
    role: MessageRole
    from_email: Optional[str] = None
    body_text: str = ""
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class ThreadEvent(BaseModel):
    id: str
    thread_id: str
    event_type: str
    payload: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class InboundMessage(BaseModel):
    """A customer or supervisor email as handed over by the mail importer"""
    thread_id: str
    from_email: str
    body_text: str
    subject: Optional[str] = None
    provider_thread_ref: Optional[str] = None
    received_at: datetime = Field(default_factory=utc_now)


class ClassificationResult(BaseModel):
    """Intent classification produced upstream of the engine"""
    intent: str
    confidence: float = Field(ge=0.0, le=1.0, default=1.0)
    missing_required_info: bool = False
    policy_blocked: bool = False
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Order lookup contract
# ---------------------------------------------------------------------------

class TrackingInfo(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class Fulfillment(BaseModel):
    tracking_info: List[TrackingInfo] = []


class OrderLineItem(BaseModel):
    title: str
    quantity: int = 1
    sku: Optional[str] = None


class Customer(BaseModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    orders_count: Optional[int] = None
    total_spent: Optional[float] = None
    tags: List[str] = []
    note: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in [self.first_name, self.last_name] if p)


class Order(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    created_at: Optional[str] = None
    tags: List[str] = []
    note: Optional[str] = None
    customer: Optional[Customer] = None
    line_items: List[OrderLineItem] = []
    fulfillments: List[Fulfillment] = []


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class CustomerSnapshot(BaseModel):
    customer_id: str = ""
    email: str = ""
    name: str = ""
    total_orders: int = 0
    total_spent: float = 0.0


class OrderSnapshot(BaseModel):
    order_id: str
    number: str
    status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    created_at: Optional[str] = None
    tracking: List[TrackingInfo] = []
    line_items: List[OrderLineItem] = []


class VerificationResult(BaseModel):
    status: VerificationStatus
    flags: List[str] = []
    customer: Optional[CustomerSnapshot] = None
    order: Optional[OrderSnapshot] = None
    message: str = ""
    error: Optional[str] = None
    cached: bool = False

    @property
    def user_message(self) -> Optional[str]:
        if self.error:
            return "Verification could not be completed."
        return None


class VerificationRecord(BaseModel):
    id: str
    thread_id: str
    email: Optional[str] = None
    order_number: Optional[str] = None
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    status: VerificationStatus
    flags: List[str] = []
    customer: Optional[CustomerSnapshot] = None
    order: Optional[OrderSnapshot] = None
    message: str = ""
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_result(self, cached: bool = False) -> VerificationResult:
        return VerificationResult(
            status=self.status,
            flags=self.flags,
            customer=self.customer,
            order=self.order,
            message=self.message,
            error=self.error,
            cached=cached
        )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class EscalationEmail(BaseModel):
    id: str
    thread_id: str
    sent_to: str
    subject: str
    html_body: str = ""
    reason: str = ""
    provider_message_id: Optional[str] = None
    response_received: bool = False
    response_type: Optional[ResponseType] = None
    response_content: Optional[str] = None
    response_at: Optional[datetime] = None
    sent_at: datetime = Field(default_factory=utc_now)


class EscalationSendResult(BaseModel):
    sent: bool
    deduplicated: bool = False
    escalation_email_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    label_applied: bool = False
    error: Optional[str] = None


class ParsedResponse(BaseModel):
    type: ResponseType
    content: str
    raw_body: str
    tags: List[str] = []


class ActionOutcome(BaseModel):
    type: str
    success: bool
    details: Dict[str, Any] = {}


class ResponseProcessingResult(BaseModel):
    processed: bool
    duplicate: bool = False
    escalation_email_id: Optional[str] = None
    thread_id: Optional[str] = None
    response_type: Optional[ResponseType] = None
    actions: List[ActionOutcome] = []

    @property
    def user_message(self) -> Optional[str]:
        if any(not action.success for action in self.actions):
            return "Action failed."
        return None


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

class KnowledgeDocument(BaseModel):
    id: str
    title: str
    body: str
    source: str = "manual"
    source_id: Optional[str] = None
    intent_tags: List[str] = []
    status: str = "published"
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class KnowledgeChunk(BaseModel):
    id: str
    doc_id: str
    chunk_index: int
    content: str


class ChunkMatch(BaseModel):
    chunk_id: str
    doc_id: str
    similarity: float


class AgentInstruction(BaseModel):
    id: str
    section: str
    title: str
    content: str
    rationale: Optional[str] = None
    category: str = "learned"
    priority: int = 50
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class DuplicateCheckResult(BaseModel):
    is_duplicate: bool = False
    similarity: float = 0.0
    existing_doc_id: Optional[str] = None
    existing_doc_title: Optional[str] = None
    checked: bool = True


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------

class ExtractedProposal(BaseModel):
    """One proposal as returned by the extraction prompt"""
    model_config = ConfigDict(populate_by_name=True)

    type: ProposalType
    title: str = Field(min_length=1)
    summary: str = ""
    proposed_content: str = Field(alias="proposedContent", min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class ExtractionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dialogue_quality: float = Field(alias="dialogueQuality", ge=0.0, le=1.0)
    proposals: List[ExtractedProposal] = []


class KnowledgeCandidatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    should_create_kb: bool = Field(alias="shouldCreateKB")
    reason: str = ""
    title: Optional[str] = None
    category: Optional[str] = None
    content: Optional[str] = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class LearningProposal(BaseModel):
    id: str
    thread_id: str
    type: ProposalType
    title: str
    summary: str = ""
    proposed_content: str
    source_type: str = "resolution_analysis"
    confidence: float = Field(ge=0.0, le=1.0)
    dialogue_quality: Optional[float] = None
    similarity_to_existing: float = 0.0
    similar_doc_id: Optional[str] = None
    auto_approved: bool = False
    status: ProposalStatus = ProposalStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    published_kb_doc_id: Optional[str] = None
    published_instruction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class AutoApprovalDecision(BaseModel):
    approved: bool
    reasons: List[str] = []


class ApprovalResult(BaseModel):
    proposal_id: str
    success: bool
    status: Optional[ProposalStatus] = None
    published_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def user_message(self) -> Optional[str]:
        return None if self.success else "Action failed."


class ResolutionAnalysis(BaseModel):
    thread_id: str
    dialogue_quality: float = 0.0
    dialogue_summary: Optional[str] = None
    proposals_generated: int = 0
    proposals_auto_approved: int = 0
    proposals_pending_review: int = 0
    analyzed_at: datetime = Field(default_factory=utc_now)


class ResolutionAnalysisResult(BaseModel):
    thread_id: str
    dialogue_quality: float = 0.0
    proposals: List[LearningProposal] = []
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TransitionContext(BaseModel):
    """Inputs for deciding where an inbound message moves a thread"""
    current_state: ThreadState
    intent: Optional[str] = None
    confidence: float = 1.0
    missing_required_info: bool = False
    policy_blocked: bool = False
    verification: Optional[VerificationResult] = None


class StateDecision(BaseModel):
    target: ThreadState
    trigger: Optional[TransitionTrigger] = None
    reason: str = ""


class TransitionResult(BaseModel):
    thread_id: str
    from_state: ThreadState
    to_state: ThreadState
    trigger: TransitionTrigger
    reason: str = ""
    escalation: Optional[EscalationSendResult] = None
    learning_scheduled: bool = False
