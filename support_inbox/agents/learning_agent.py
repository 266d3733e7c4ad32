from typing import List, Dict, Optional, Tuple
import logging
from support_inbox.exceptions import ConfigurationError, ExternalServiceError, ParseFailure
from support_inbox.models.schemas import (
    ApprovalResult, AutoApprovalDecision, DuplicateCheckResult,
    ExtractionPayload, KnowledgeCandidatePayload, LearningProposal, Message,
    MessageDirection, MessageRole, ProposalStatus, ProposalType,
    ResolutionAnalysis, ResolutionAnalysisResult, Thread, utc_now
)
from support_inbox.agents.knowledge_agent import (
    DuplicateDetector, KnowledgePublisher, duplicate_detector, knowledge_publisher
)
from support_inbox.services.llm_service import GeminiLLMService, llm_service
from support_inbox.services.store import SupportStore, new_id, support_store
from support_inbox.services.text_patterns import contains_pii, sanitize_pii
from config.settings import settings

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = """You are a knowledge extraction system for a customer support agent.

Analyze this resolved support conversation and extract learnings that could improve the agent.

## What to Extract
1. KB articles (factual knowledge): product details, troubleshooting steps that worked,
   policies explained, common issues and their solutions. Only propose an article if the
   information is not already covered by the existing KB below, is generalizable and is
   concrete.
2. Instruction updates (behavioral patterns): effective diagnostic questions, communication
   strategies that worked, when to escalate versus handle.

## Existing KB Context (avoid duplicates)
{existing_kb}

## Quality Guidelines
- Remove ALL PII: names, emails, order numbers, addresses, phones
- Make content generalizable
- Skip routine resolutions with no new information

## Confidence Score (0-1)
- 0.9+: specific steps, concrete facts, clearly generalizable
- 0.7-0.9: useful but may need editing
- below 0.7: too vague or customer-specific

Return JSON:
{{
  "dialogueQuality": 0.0-1.0,
  "proposals": [
    {{
      "type": "kb_article" | "instruction_update",
      "title": "Short descriptive title",
      "summary": "1-2 sentence summary",
      "proposedContent": "Full content (markdown for KB)",
      "confidence": 0.0-1.0
    }}
  ]
}}

If nothing is worth learning, return: {{"dialogueQuality": <score>, "proposals": []}}"""

KB_CANDIDATE_SYSTEM_PROMPT = """You analyze support responses to determine if they contain reusable knowledge.

Return JSON only:
{
  "shouldCreateKB": boolean,
  "reason": "string",
  "title": "string (if shouldCreateKB)",
  "category": "product|troubleshooting|policy|shipping|returns|compatibility",
  "content": "string - formatted KB article content without customer details (if shouldCreateKB)",
  "confidence": 0.0-1.0
}

Create KB articles for product information, troubleshooting steps that could help other
customers, policy clarifications and common questions with definitive answers.
Don't create KB articles for one-off customer-specific situations, sensitive or private
information, or vague and incomplete information."""


class AutoApprovalPolicy:
    """Per-type thresholds deciding whether a proposal may publish without review.

    Content that still looks like it carries PII is never auto-approved, and
    neither is a proposal whose duplicate check could not run.
    """

    def __init__(self, thresholds: Dict[str, Dict[str, float]]):
        self.thresholds = thresholds

    @classmethod
    def from_settings(cls) -> "AutoApprovalPolicy":
        return cls(settings.AUTO_APPROVAL_THRESHOLDS)

    def evaluate(self, proposal_type: ProposalType, confidence: float,
                 dialogue_quality: float, duplicate: DuplicateCheckResult,
                 content: str) -> AutoApprovalDecision:
        thresholds = self.thresholds.get(proposal_type.value)
        if thresholds is None:
            return AutoApprovalDecision(approved=False,
                                        reasons=[f"No thresholds for {proposal_type.value}"])

        reasons = []
        if confidence < thresholds["min_confidence"]:
            reasons.append(f"Confidence {confidence:.2f} below {thresholds['min_confidence']:.2f}")
        if dialogue_quality < thresholds["min_dialogue_quality"]:
            reasons.append(
                f"Dialogue quality {dialogue_quality:.2f} below {thresholds['min_dialogue_quality']:.2f}"
            )
        if not duplicate.checked:
            reasons.append("Duplicate check unavailable")
        elif duplicate.similarity > thresholds["max_similarity"]:
            reasons.append(
                f"Similarity {duplicate.similarity:.2f} above {thresholds['max_similarity']:.2f}"
            )
        if contains_pii(content):
            reasons.append("Content contains possible PII")

        return AutoApprovalDecision(approved=not reasons, reasons=reasons)


class LearningProposalPipeline:
    """Agent responsible for learning from resolved threads and improving the knowledge base"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 llm: Optional[GeminiLLMService] = None,
                 detector: Optional[DuplicateDetector] = None,
                 publisher: Optional[KnowledgePublisher] = None,
                 policy: Optional[AutoApprovalPolicy] = None):
        self.name = "Learning Agent"
        self.store = store or support_store
        self.llm = llm or llm_service
        self.detector = detector or duplicate_detector
        self.publisher = publisher or knowledge_publisher
        self.policy = policy or AutoApprovalPolicy.from_settings()

    async def analyze_thread(self, thread_id: str) -> ResolutionAnalysisResult:
        """
        Turn a resolved conversation into KB or instruction proposals,
        auto-publishing the ones the policy allows
        """
        try:
            return await self._analyze(thread_id)
        except Exception as e:
            logger.exception("Resolution analysis failed for thread %s", thread_id)
            return ResolutionAnalysisResult(thread_id=thread_id, error=str(e))

    async def _analyze(self, thread_id: str) -> ResolutionAnalysisResult:
        thread = self.store.require_thread(thread_id)
        messages = [m for m in self.store.list_messages(thread_id) if m.role != MessageRole.DRAFT]

        if len(messages) < settings.MIN_DIALOGUE_MESSAGES:
            logger.info("Thread %s has too few messages (%d) to analyze", thread_id, len(messages))
            self.store.upsert_resolution_analysis(ResolutionAnalysis(thread_id=thread_id))
            return ResolutionAnalysisResult(thread_id=thread_id,
                                            skipped_reason="insufficient_messages")

        transcript = self.build_transcript(thread, messages)
        existing_kb = self.existing_kb_summary(thread.last_intent)
        payload = await self._extract(transcript, existing_kb)

        if payload.dialogue_quality < settings.MIN_DIALOGUE_QUALITY or not payload.proposals:
            logger.info("Thread %s: low quality (%.2f) or no proposals",
                        thread_id, payload.dialogue_quality)
            self.store.upsert_resolution_analysis(ResolutionAnalysis(
                thread_id=thread_id,
                dialogue_quality=payload.dialogue_quality,
                dialogue_summary=transcript[:500]
            ))
            return ResolutionAnalysisResult(thread_id=thread_id,
                                            dialogue_quality=payload.dialogue_quality,
                                            skipped_reason="no_usable_proposals")

        proposals: List[LearningProposal] = []
        auto_approved = 0
        pending = 0

        for extracted in payload.proposals:
            duplicate = await self.detector.check(extracted.proposed_content)
            decision = self.policy.evaluate(
                extracted.type, extracted.confidence, payload.dialogue_quality,
                duplicate, extracted.proposed_content
            )

            saved, created = self.store.create_proposal_if_absent(LearningProposal(
                id=new_id(),
                thread_id=thread_id,
                type=extracted.type,
                title=extracted.title,
                summary=extracted.summary,
                proposed_content=extracted.proposed_content,
                source_type="resolution_analysis",
                confidence=extracted.confidence,
                dialogue_quality=payload.dialogue_quality,
                similarity_to_existing=duplicate.similarity,
                similar_doc_id=duplicate.existing_doc_id
            ))
            if not created:
                # A live proposal from an earlier run still counts toward this analysis
                logger.info("Proposal %r already exists for thread %s", extracted.title, thread_id)
                if saved.status == ProposalStatus.PENDING:
                    pending += 1
                elif saved.auto_approved:
                    auto_approved += 1
                proposals.append(saved)
                continue

            if decision.approved:
                approval = await self.approve_proposal(
                    saved.id, settings.AUTO_APPROVAL_REVIEWER,
                    notes="Auto-approved", auto=True
                )
                if approval.success:
                    auto_approved += 1
                else:
                    pending += 1
            else:
                logger.info("Proposal %r held for review: %s", extracted.title,
                            "; ".join(decision.reasons))
                pending += 1

            proposals.append(self.store.get_proposal(saved.id))

        self.store.upsert_resolution_analysis(ResolutionAnalysis(
            thread_id=thread_id,
            dialogue_quality=payload.dialogue_quality,
            dialogue_summary=transcript[:500],
            proposals_generated=len(proposals),
            proposals_auto_approved=auto_approved,
            proposals_pending_review=pending
        ))
        logger.info("Thread %s: %d proposals (%d auto-approved)",
                    thread_id, len(proposals), auto_approved)

        return ResolutionAnalysisResult(
            thread_id=thread_id,
            dialogue_quality=payload.dialogue_quality,
            proposals=proposals
        )

    async def _extract(self, transcript: str, existing_kb: str) -> ExtractionPayload:
        neutral = ExtractionPayload(dialogue_quality=settings.NEUTRAL_DIALOGUE_QUALITY)
        if not self.llm.is_configured():
            logger.warning("Text generation not configured, skipping extraction")
            return neutral
        try:
            return await self.llm.generate_structured(
                f"Analyze this resolved support conversation and extract learnings:\n\n{transcript}",
                ExtractionPayload,
                system_prompt=EXTRACTION_SYSTEM_PROMPT.format(existing_kb=existing_kb),
                max_tokens=settings.MAX_TOKENS
            )
        except (ConfigurationError, ExternalServiceError, ParseFailure) as e:
            logger.warning("Learning extraction failed: %s", e)
            return neutral

    def build_transcript(self, thread: Thread, messages: List[Message]) -> str:
        """Sanitized, truncated conversation for the extraction prompt"""
        parts = [
            "## Thread Context",
            f"Subject: {thread.subject or 'Unknown'}",
            f"Intent: {thread.last_intent or 'Unknown'}",
            "",
            "## Conversation",
        ]
        for message in messages:
            speaker = "Customer" if message.direction == MessageDirection.INBOUND else "Support"
            body = sanitize_pii(message.body_text)[:settings.TRANSCRIPT_MESSAGE_CHARS]
            parts.append(f"{speaker}: {body}")
            parts.append("")
        return "\n".join(parts)

    def existing_kb_summary(self, intent: Optional[str]) -> str:
        if not intent:
            return "No existing KB articles for this intent."
        titles = self.store.list_published_doc_titles(intent, settings.EXISTING_KB_SUMMARY_LIMIT)
        if not titles:
            return "No existing KB articles for this intent."
        return f"Existing KB articles for {intent}:\n" + "\n".join(f"- {t}" for t in titles)

    async def approve_proposal(self, proposal_id: str, reviewer: str,
                               notes: Optional[str] = None,
                               auto: bool = False) -> ApprovalResult:
        """Move a pending proposal to approved and publish it; idempotent"""
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            return ApprovalResult(proposal_id=proposal_id, success=False,
                                  error="Proposal not found")

        if not self.store.transition_proposal(
                proposal_id, [ProposalStatus.PENDING], ProposalStatus.APPROVED,
                reviewed_by=reviewer, reviewed_at=utc_now(), review_notes=notes,
                auto_approved=auto):
            return self._settled_result(self.store.get_proposal(proposal_id),
                                        ProposalStatus.APPROVED, proposal_id)

        try:
            published_id = await self._publish(proposal)
        except Exception as e:
            logger.error("Publishing proposal %s failed: %s", proposal_id, e)
            self.store.transition_proposal(
                proposal_id, [ProposalStatus.APPROVED], ProposalStatus.PENDING,
                auto_approved=False, reviewed_by=None, reviewed_at=None
            )
            return ApprovalResult(proposal_id=proposal_id, success=False,
                                  status=ProposalStatus.PENDING, error=str(e))

        self.store.add_event(proposal.thread_id, "PROPOSAL_APPROVED", {
            "proposal_id": proposal_id,
            "reviewer": reviewer,
            "auto_approved": auto,
            "published_id": published_id
        })
        return ApprovalResult(proposal_id=proposal_id, success=True,
                              status=ProposalStatus.APPROVED, published_id=published_id)

    async def reject_proposal(self, proposal_id: str, reviewer: str,
                              reason: Optional[str] = None) -> ApprovalResult:
        """Reject a pending proposal; idempotent"""
        if not self.store.transition_proposal(
                proposal_id, [ProposalStatus.PENDING], ProposalStatus.REJECTED,
                reviewed_by=reviewer, reviewed_at=utc_now(), review_notes=reason):
            return self._settled_result(self.store.get_proposal(proposal_id),
                                        ProposalStatus.REJECTED, proposal_id)

        proposal = self.store.get_proposal(proposal_id)
        self.store.add_event(proposal.thread_id, "PROPOSAL_REJECTED", {
            "proposal_id": proposal_id,
            "reviewer": reviewer
        })
        return ApprovalResult(proposal_id=proposal_id, success=True,
                              status=ProposalStatus.REJECTED)

    @staticmethod
    def _settled_result(proposal: Optional[LearningProposal],
                        wanted: ProposalStatus,
                        proposal_id: Optional[str] = None) -> ApprovalResult:
        """Result for a proposal that was no longer pending"""
        if proposal is None:
            return ApprovalResult(proposal_id=proposal_id or "", success=False,
                                  error="Proposal not found")
        if proposal.status == wanted:
            return ApprovalResult(
                proposal_id=proposal.id, success=True, status=proposal.status,
                published_id=proposal.published_kb_doc_id or proposal.published_instruction_id
            )
        return ApprovalResult(proposal_id=proposal.id, success=False, status=proposal.status,
                              error=f"Proposal is already {proposal.status.value}")

    async def _publish(self, proposal: LearningProposal) -> str:
        if proposal.type == ProposalType.KB_ARTICLE:
            thread = self.store.get_thread(proposal.thread_id)
            intent_tags = [thread.last_intent] if thread and thread.last_intent else []
            doc = await self.publisher.publish_kb_article(
                proposal.title, proposal.proposed_content,
                source="learning_proposal", source_id=proposal.id,
                intent_tags=intent_tags
            )
            self.store.update_proposal(proposal.id, published_kb_doc_id=doc.id)
            return doc.id

        instruction = self.publisher.publish_instruction(
            proposal.title, proposal.proposed_content,
            rationale=f"Learned from thread {proposal.thread_id}"
        )
        self.store.update_proposal(proposal.id, published_instruction_id=instruction.id)
        return instruction.id

    async def submit_knowledge_candidate(self, thread_id: str, content: str,
                                         source: str = "escalation_response"
                                         ) -> Tuple[Optional[LearningProposal], str]:
        """
        Ask whether supervisor-written content is reusable knowledge and, if so,
        file it as a pending KB proposal. Never publishes directly.
        Returns the proposal (or None) and a short reason.
        """
        if len(content.strip()) <= settings.KB_CANDIDATE_MIN_LENGTH:
            return None, "Content too short"
        if not self.llm.is_configured():
            return None, "Text generation not configured"

        thread = self.store.require_thread(thread_id)
        prompt = f"""Thread subject: {thread.subject or "Support request"}
Intent: {thread.last_intent or "unknown"}

Supervisor's response:
{content}

Should this be a KB article?"""

        try:
            payload = await self.llm.generate_structured(
                prompt, KnowledgeCandidatePayload,
                system_prompt=KB_CANDIDATE_SYSTEM_PROMPT, temperature=0.3, max_tokens=500
            )
        except (ConfigurationError, ExternalServiceError, ParseFailure) as e:
            logger.warning("Knowledge candidate analysis failed for thread %s: %s", thread_id, e)
            return None, "Analysis unavailable"

        if not (payload.should_create_kb and payload.title and payload.content):
            return None, payload.reason or "Not reusable knowledge"

        body = sanitize_pii(payload.content)
        duplicate = await self.detector.check(body)

        saved, created = self.store.create_proposal_if_absent(LearningProposal(
            id=new_id(),
            thread_id=thread_id,
            type=ProposalType.KB_ARTICLE,
            title=payload.title,
            summary=payload.reason,
            proposed_content=body,
            source_type=source,
            confidence=payload.confidence,
            similarity_to_existing=duplicate.similarity,
            similar_doc_id=duplicate.existing_doc_id
        ))
        if created:
            logger.info("Knowledge candidate %r filed for review", payload.title)
        return saved, payload.reason


# Global learning pipeline instance
learning_pipeline = LearningProposalPipeline()
