"""
Thread lifecycle.

States move only along the edges in ``TRANSITIONS``; every change is
persisted with an optimistic version check so concurrent writers cannot
silently overwrite each other. Entering ESCALATED notifies the supervisor,
entering RESOLVED schedules resolution analysis exactly once per resolution.
"""

import asyncio
import logging
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from config.settings import settings
from support_inbox.exceptions import InvalidTransitionError
from support_inbox.models.schemas import (
    EscalationSendResult, StateDecision, Thread, ThreadState, TransitionContext,
    TransitionResult, TransitionTrigger, VerificationStatus, utc_now
)
from support_inbox.agents.escalation_agent import EscalationNotifier, escalation_notifier
from support_inbox.agents.learning_agent import LearningProposalPipeline, learning_pipeline
from support_inbox.services.store import SupportStore, support_store

logger = logging.getLogger(__name__)

S = ThreadState
T = TransitionTrigger

# (allowed sources, target, allowed triggers)
TRANSITIONS: List[Tuple[FrozenSet[ThreadState], ThreadState, FrozenSet[TransitionTrigger]]] = [
    (frozenset({S.NEW, S.AWAITING_INFO, S.IN_PROGRESS}),
     S.AWAITING_INFO, frozenset({T.NEEDS_INFO})),
    (frozenset({S.NEW, S.AWAITING_INFO, S.IN_PROGRESS, S.HUMAN_HANDLING}),
     S.ESCALATED, frozenset({T.ESCALATION_POLICY})),
    (frozenset({S.ESCALATED}),
     S.HUMAN_HANDLING, frozenset({T.SUPERVISOR_TAKEOVER})),
    (frozenset({S.ESCALATED, S.HUMAN_HANDLING}),
     S.RESOLVED, frozenset({T.SUPERVISOR_RESOLVE, T.AGENT_RESOLUTION})),
    (frozenset({S.NEW, S.AWAITING_INFO, S.IN_PROGRESS}),
     S.RESOLVED, frozenset({T.CUSTOMER_CLOSED})),
    (frozenset({S.NEW, S.AWAITING_INFO, S.ESCALATED, S.HUMAN_HANDLING}),
     S.IN_PROGRESS, frozenset({T.INBOUND_MESSAGE, T.DRAFT_READY})),
]

# States an inbound customer message never moves a thread out of
HUMAN_OWNED_STATES = {S.ESCALATED, S.HUMAN_HANDLING}


def is_allowed(from_state: ThreadState, to_state: ThreadState,
               trigger: TransitionTrigger) -> bool:
    return any(
        from_state in sources and to_state == target and trigger in triggers
        for sources, target, triggers in TRANSITIONS
    )


class ThreadStateMachine:
    def __init__(self,
                 store: Optional[SupportStore] = None,
                 notifier: Optional[EscalationNotifier] = None,
                 pipeline: Optional[LearningProposalPipeline] = None,
                 min_confidence: Optional[float] = None):
        self.name = "Thread State Machine"
        self.store = store or support_store
        self.notifier = notifier or escalation_notifier
        self.pipeline = pipeline or learning_pipeline
        self.min_confidence = (settings.MIN_CONFIDENCE_THRESHOLD
                               if min_confidence is None else min_confidence)
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(self, thread_id: str, target: ThreadState,
                         trigger: TransitionTrigger, reason: str = "",
                         handler: Optional[str] = None) -> TransitionResult:
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise InvalidTransitionError(f"Thread not found: {thread_id}")

        if not is_allowed(thread.state, target, trigger):
            raise InvalidTransitionError(
                f"{thread.state.value} -> {target.value} is not allowed on {trigger.value}"
            )

        fields = self._entry_fields(thread, target, handler)
        if not self.store.compare_and_set_thread(thread.id, thread.version, fields):
            raise InvalidTransitionError(
                f"Thread {thread_id} changed concurrently; transition to {target.value} rejected"
            )

        self.store.add_event(thread_id, "STATE_TRANSITION", {
            "from": thread.state.value,
            "to": target.value,
            "trigger": trigger.value,
            "reason": reason
        })
        logger.info("Thread %s: %s -> %s (%s)", thread_id, thread.state.value,
                    target.value, trigger.value)

        result = TransitionResult(
            thread_id=thread_id,
            from_state=thread.state,
            to_state=target,
            trigger=trigger,
            reason=reason
        )

        if target == S.ESCALATED:
            result.escalation = await self._on_escalated(thread_id, reason)
        elif target == S.RESOLVED:
            result.learning_scheduled = self._on_resolved(thread_id, fields["resolution_count"])

        return result

    def _entry_fields(self, thread: Thread, target: ThreadState,
                      handler: Optional[str]) -> Dict:
        fields = {"state": target}
        now = utc_now()
        if target == S.HUMAN_HANDLING:
            fields.update(
                human_handling=True,
                human_handler=handler or settings.SUPERVISOR_EMAIL,
                human_handling_started_at=now
            )
        elif thread.human_handling:
            fields.update(human_handling=False)

        if target == S.RESOLVED:
            fields.update(resolution_count=thread.resolution_count + 1, resolved_at=now)
        return fields

    async def _on_escalated(self, thread_id: str, reason: str) -> EscalationSendResult:
        # The transition stands even when the notification fails
        try:
            return await self.notifier.notify(thread_id, reason)
        except Exception as e:
            logger.error("Escalation notification failed for thread %s: %s", thread_id, e)
            self.store.add_event(thread_id, "ESCALATION_EMAIL_FAILED", {"error": str(e)})
            return EscalationSendResult(sent=False, error=str(e))

    def _on_resolved(self, thread_id: str, resolution_count: int) -> bool:
        if not self.store.claim_learning_run(thread_id, resolution_count):
            logger.info("Learning already scheduled for thread %s (#%d)", thread_id, resolution_count)
            return False
        self._schedule(self.pipeline.analyze_thread(thread_id))
        return True

    def _schedule(self, coro):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self):
        """Wait for scheduled background work such as resolution analysis"""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def reopen(self, thread_id: str) -> Thread:
        """Reset a resolved thread to NEW when the customer writes again"""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise InvalidTransitionError(f"Thread not found: {thread_id}")
        if thread.state != S.RESOLVED:
            return thread

        if not self.store.compare_and_set_thread(thread.id, thread.version, {
            "state": S.NEW,
            "human_handling": False
        }):
            raise InvalidTransitionError(f"Thread {thread_id} changed concurrently; reopen rejected")

        self.store.add_event(thread_id, "THREAD_REOPENED", {
            "resolution_count": thread.resolution_count
        })
        logger.info("Thread %s reopened", thread_id)
        return self.store.get_thread(thread_id)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def decide(self, context: TransitionContext) -> StateDecision:
        """Target state, trigger and reason for an inbound message"""
        current = context.current_state
        intent = context.intent
        verification = context.verification

        if current in HUMAN_OWNED_STATES:
            return StateDecision(target=current, reason="Thread is with a human")

        if intent in settings.CLOSING_INTENTS:
            return StateDecision(target=S.RESOLVED, trigger=T.CUSTOMER_CLOSED,
                                 reason="Customer sent thank you message")

        if intent in settings.ESCALATION_INTENTS:
            return StateDecision(target=S.ESCALATED, trigger=T.ESCALATION_POLICY,
                                 reason=f"{intent} detected - requires human review")

        if context.policy_blocked:
            return StateDecision(target=S.ESCALATED, trigger=T.ESCALATION_POLICY,
                                 reason="Draft contained blocked policy language")

        if verification is not None:
            if verification.status == VerificationStatus.FLAGGED:
                return StateDecision(target=S.ESCALATED, trigger=T.ESCALATION_POLICY,
                                     reason="Customer flagged: " + ", ".join(verification.flags))
            if verification.error:
                return StateDecision(target=S.ESCALATED, trigger=T.ESCALATION_POLICY,
                                     reason="Verification could not be completed")

        if context.confidence < self.min_confidence:
            return StateDecision(target=S.ESCALATED, trigger=T.ESCALATION_POLICY,
                                 reason=f"Low classification confidence ({context.confidence:.2f})")

        if context.missing_required_info:
            return StateDecision(target=S.AWAITING_INFO, trigger=T.NEEDS_INFO,
                                 reason="Missing required information from customer")

        if verification is not None and verification.status in (
                VerificationStatus.PENDING, VerificationStatus.NOT_FOUND,
                VerificationStatus.MISMATCH):
            return StateDecision(target=S.AWAITING_INFO, trigger=T.NEEDS_INFO,
                                 reason=f"Awaiting verification ({verification.status.value})")

        if current == S.AWAITING_INFO:
            reason = "Customer provided additional information"
        else:
            reason = "Draft ready for review"
        return StateDecision(target=S.IN_PROGRESS, trigger=T.INBOUND_MESSAGE, reason=reason)

    def next_state(self, context: TransitionContext) -> ThreadState:
        return self.decide(context).target

    def transition_reason(self, context: TransitionContext) -> str:
        return self.decide(context).reason


# Global state machine instance
state_machine = ThreadStateMachine()
