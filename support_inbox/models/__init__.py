# support_inbox/models/__init__.py
"""
Data Models and Schemas

Pydantic models for threads, verification, escalation and learning.
"""

from support_inbox.models.schemas import (
    Thread,
    ThreadState,
    TransitionTrigger,
    Message,
    InboundMessage,
    ClassificationResult,
    VerificationResult,
    VerificationStatus,
    EscalationEmail,
    ParsedResponse,
    ResponseType,
    ResponseProcessingResult,
    LearningProposal,
    ResolutionAnalysisResult
)

__all__ = [
    "Thread",
    "ThreadState",
    "TransitionTrigger",
    "Message",
    "InboundMessage",
    "ClassificationResult",
    "VerificationResult",
    "VerificationStatus",
    "EscalationEmail",
    "ParsedResponse",
    "ResponseType",
    "ResponseProcessingResult",
    "LearningProposal",
    "ResolutionAnalysisResult"
]
