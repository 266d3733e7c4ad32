"""
Escalation Response Router.

Turns a supervisor's reply to an escalation email into exactly one action:
relay the answer, record an instruction, resolve, draft from guidance, or
take the thread over. Tags are matched from ordered tables so precedence is
data, not control flow.
"""

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config.settings import settings
from support_inbox.models.schemas import (
    ActionOutcome, EscalationEmail, ParsedResponse, ResponseProcessingResult,
    ResponseType, ThreadState, TransitionTrigger
)
from support_inbox.agents.knowledge_agent import KnowledgePublisher, knowledge_publisher
from support_inbox.agents.learning_agent import LearningProposalPipeline, learning_pipeline
from support_inbox.agents.resolution_agent import DraftAgent, draft_agent
from support_inbox.services.store import SupportStore, support_store
from support_inbox.workflows.state_machine import ThreadStateMachine, state_machine

logger = logging.getLogger(__name__)

TAG_PATTERNS = [
    (re.compile(r"\[INSTRUCTION\]", re.IGNORECASE), "INSTRUCTION"),
    (re.compile(r"\[RESOLVE\]", re.IGNORECASE), "RESOLVE"),
    (re.compile(r"\[DRAFT\]", re.IGNORECASE), "DRAFT"),
    (re.compile(r"\[KB\]", re.IGNORECASE), "KB"),
    (re.compile(r"\[TAKEOVER\]", re.IGNORECASE), "TAKEOVER"),
]

# First tag present wins; no tag means relay
TYPE_PRECEDENCE = [
    ("INSTRUCTION", ResponseType.INSTRUCTION),
    ("RESOLVE", ResponseType.RESOLVE),
    ("DRAFT", ResponseType.DRAFT),
    ("TAKEOVER", ResponseType.TAKEOVER),
]

# Stripped before tag matching; replies quote the email's tag cheat-sheet
QUOTE_PATTERNS = [
    re.compile(r"^>.*$", re.MULTILINE),
    re.compile(r"^On .* wrote:$", re.MULTILINE),
    re.compile(r"^-{2,}.*$", re.MULTILINE),
    re.compile(r"^Sent from my .*$", re.MULTILINE | re.IGNORECASE),
]

BLANK_RUN_PATTERN = re.compile(r"\n{3,}")


def parse_response(body: str) -> ParsedResponse:
    raw_body = body or ""
    content = raw_body.replace("\r\n", "\n")
    tags: List[str] = []

    for pattern in QUOTE_PATTERNS:
        content = pattern.sub("", content)

    for pattern, tag in TAG_PATTERNS:
        if pattern.search(content):
            tags.append(tag)
            content = pattern.sub("", content).strip()

    response_type = ResponseType.RELAY
    for tag, candidate in TYPE_PRECEDENCE:
        if tag in tags:
            response_type = candidate
            break

    content = BLANK_RUN_PATTERN.sub("\n\n", content)

    return ParsedResponse(
        type=response_type,
        content=content.strip(),
        raw_body=raw_body,
        tags=tags
    )


class EscalationResponseRouter:
    def __init__(self,
                 store: Optional[SupportStore] = None,
                 machine: Optional[ThreadStateMachine] = None,
                 drafts: Optional[DraftAgent] = None,
                 pipeline: Optional[LearningProposalPipeline] = None,
                 publisher: Optional[KnowledgePublisher] = None,
                 supervisor_email: Optional[str] = None):
        self.name = "Escalation Response Router"
        self.store = store or support_store
        self.machine = machine or state_machine
        self.drafts = drafts or draft_agent
        self.pipeline = pipeline or learning_pipeline
        self.publisher = publisher or knowledge_publisher
        self.supervisor_email = (supervisor_email or settings.SUPERVISOR_EMAIL).lower()
        self._handlers = {
            ResponseType.RELAY: self._handle_relay,
            ResponseType.INSTRUCTION: self._handle_instruction,
            ResponseType.RESOLVE: self._handle_resolve,
            ResponseType.DRAFT: self._handle_draft,
            ResponseType.TAKEOVER: self._handle_takeover,
        }

    def is_supervisor(self, from_email: Optional[str]) -> bool:
        return bool(from_email) and from_email.strip().lower() == self.supervisor_email

    def find_outstanding_escalation(self, thread_id: str,
                                    from_email: str) -> Optional[EscalationEmail]:
        if not self.is_supervisor(from_email):
            return None
        return self.store.find_outstanding_escalation(thread_id)

    async def process_reply(self, escalation_email_id: str, thread_id: str,
                            body: str) -> ResponseProcessingResult:
        parsed = parse_response(body)

        if not self.store.claim_escalation_response(escalation_email_id, parsed.type, parsed.content):
            logger.info("Escalation %s already answered, ignoring duplicate", escalation_email_id)
            return ResponseProcessingResult(
                processed=False,
                duplicate=True,
                escalation_email_id=escalation_email_id,
                thread_id=thread_id,
                response_type=parsed.type
            )

        logger.info("Processing %s response for thread %s", parsed.type.value, thread_id)
        actions: List[ActionOutcome] = []
        await self._handlers[parsed.type](thread_id, parsed, actions)

        self.store.add_event(thread_id, "ESCALATION_RESPONSE_PROCESSED", {
            "escalation_email_id": escalation_email_id,
            "response_type": parsed.type.value,
            "tags": parsed.tags,
            "actions": [a.model_dump() for a in actions]
        })

        return ResponseProcessingResult(
            processed=True,
            escalation_email_id=escalation_email_id,
            thread_id=thread_id,
            response_type=parsed.type,
            actions=actions
        )

    async def handle_inbound_reply(self, from_email: str, body: str,
                                   thread_id: Optional[str] = None,
                                   provider_thread_ref: Optional[str] = None
                                   ) -> Optional[ResponseProcessingResult]:
        """Route a supervisor reply; None when it is not an answer to an open escalation"""
        if not self.is_supervisor(from_email):
            return None

        if thread_id is None and provider_thread_ref:
            thread = self.store.get_thread_by_provider_ref(provider_thread_ref)
            thread_id = thread.id if thread else None
        if thread_id is None:
            return None

        escalation = self.find_outstanding_escalation(thread_id, from_email)
        if escalation is None:
            return None
        return await self.process_reply(escalation.id, thread_id, body)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _run_action(self, actions: List[ActionOutcome], action_type: str,
                          func: Callable[[], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]):
        """Run one sub-action, recording success or failure without raising"""
        try:
            details = func()
            if inspect.isawaitable(details):
                details = await details
            actions.append(ActionOutcome(type=action_type, success=True, details=details or {}))
        except Exception as e:
            logger.error("Action %s failed: %s", action_type, e)
            actions.append(ActionOutcome(type=action_type, success=False, details={"error": str(e)}))

    def _relay(self, thread_id: str, content: str) -> Dict[str, Any]:
        draft = self.drafts.create_relay_draft(thread_id, content, created_by=self.supervisor_email)
        return {"draft_id": draft.id}

    async def _knowledge_candidate(self, thread_id: str, content: str) -> Dict[str, Any]:
        proposal, reason = await self.pipeline.submit_knowledge_candidate(thread_id, content)
        return {"proposal_id": proposal.id if proposal else None, "reason": reason}

    async def _handle_relay(self, thread_id: str, parsed: ParsedResponse,
                            actions: List[ActionOutcome]):
        await self._run_action(actions, "relay_draft_created",
                               lambda: self._relay(thread_id, parsed.content))
        if not actions[-1].success:
            # Without a draft the thread stays with the supervisor
            return

        thread = self.store.get_thread(thread_id)
        if thread and thread.state in (ThreadState.ESCALATED, ThreadState.HUMAN_HANDLING):
            async def move_to_in_progress():
                result = await self.machine.transition(
                    thread_id, ThreadState.IN_PROGRESS, TransitionTrigger.DRAFT_READY,
                    reason="Supervisor answer relayed"
                )
                return {"state": result.to_state.value}
            await self._run_action(actions, "state_updated", move_to_in_progress)

        if len(parsed.content) > settings.KB_CANDIDATE_MIN_LENGTH:
            await self._run_action(actions, "kb_candidate",
                                   lambda: self._knowledge_candidate(thread_id, parsed.content))

    async def _handle_instruction(self, thread_id: str, parsed: ParsedResponse,
                                  actions: List[ActionOutcome]):
        def add_instruction():
            instruction = self.publisher.append_instruction(
                settings.ESCALATION_INSTRUCTION_SECTION,
                parsed.content,
                rationale=f"From escalation response on thread {thread_id}",
                category="escalation"
            )
            return {"instruction_id": instruction.id, "section": instruction.section}

        def acknowledge():
            draft = self.drafts.create_acknowledgment_draft(thread_id, created_by=self.supervisor_email)
            return {"draft_id": draft.id}

        await self._run_action(actions, "instruction_updated", add_instruction)
        await self._run_action(actions, "acknowledgment_draft_created", acknowledge)

    async def _handle_resolve(self, thread_id: str, parsed: ParsedResponse,
                              actions: List[ActionOutcome]):
        async def resolve():
            result = await self.machine.transition(
                thread_id, ThreadState.RESOLVED, TransitionTrigger.SUPERVISOR_RESOLVE,
                reason="Resolved by supervisor"
            )
            return {"state": result.to_state.value, "learning_scheduled": result.learning_scheduled}

        await self._run_action(actions, "thread_resolved", resolve)

        if parsed.content:
            await self._run_action(actions, "resolution_draft_created",
                                   lambda: self._relay(thread_id, parsed.content))

        if len(parsed.content) > settings.KB_CANDIDATE_MIN_LENGTH:
            await self._run_action(actions, "kb_candidate",
                                   lambda: self._knowledge_candidate(thread_id, parsed.content))

    async def _handle_draft(self, thread_id: str, parsed: ParsedResponse,
                            actions: List[ActionOutcome]):
        async def guided_draft():
            draft = await self.drafts.generate_guided_draft(thread_id, parsed.content)
            return {"draft_id": draft.id}

        await self._run_action(actions, "guided_draft_created", guided_draft)

    async def _handle_takeover(self, thread_id: str, parsed: ParsedResponse,
                               actions: List[ActionOutcome]):
        async def takeover():
            await self.machine.transition(
                thread_id, ThreadState.HUMAN_HANDLING, TransitionTrigger.SUPERVISOR_TAKEOVER,
                reason="Supervisor took over", handler=self.supervisor_email
            )
            return {"handler": self.supervisor_email}

        await self._run_action(actions, "takeover_marked", takeover)


# Global response router instance
response_router = EscalationResponseRouter()
