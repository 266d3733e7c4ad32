from typing import Dict, Any, List, Optional
from langgraph.graph import StateGraph, END
from typing_extensions import TypedDict
import logging

from support_inbox.models.schemas import (
    ClassificationResult, InboundMessage, Message, MessageDirection, MessageRole,
    ThreadState, TransitionContext, TransitionTrigger, VerificationStatus, utc_now
)
from support_inbox.agents.resolution_agent import DraftAgent, draft_agent
from support_inbox.agents.response_router import EscalationResponseRouter, response_router
from support_inbox.agents.verification_agent import VerificationGate, verification_gate
from support_inbox.services.store import SupportStore, new_id, support_store
from support_inbox.workflows.state_machine import ThreadStateMachine, is_allowed, state_machine

logger = logging.getLogger(__name__)

VERIFICATION_PROMPT_STATUSES = (
    VerificationStatus.PENDING,
    VerificationStatus.NOT_FOUND,
    VerificationStatus.MISMATCH,
)


class SupportWorkflowState(TypedDict):
    """State for the inbound message workflow"""
    inbound: InboundMessage
    classification: ClassificationResult
    route: str
    verification: Dict[str, Any]
    decision: Dict[str, Any]
    transition: Dict[str, Any]
    reply_result: Dict[str, Any]
    drafts: List[str]
    workflow_status: str
    error_messages: List[str]
    metadata: Dict[str, Any]


class SupportInboxWorkflow:
    """LangGraph workflow for processing one inbound message on a thread"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 gate: Optional[VerificationGate] = None,
                 machine: Optional[ThreadStateMachine] = None,
                 router: Optional[EscalationResponseRouter] = None,
                 drafts: Optional[DraftAgent] = None):
        self.store = store or support_store
        self.gate = gate or verification_gate
        self.machine = machine or state_machine
        self.router = router or response_router
        self.drafts = drafts or draft_agent
        self.workflow = self._build_workflow()

    def _build_workflow(self) -> StateGraph:
        """Build the LangGraph workflow"""

        workflow = StateGraph(SupportWorkflowState)

        workflow.add_node("route_sender", self._route_sender_node)
        workflow.add_node("handle_supervisor_reply", self._handle_supervisor_reply_node)
        workflow.add_node("record_message", self._record_message_node)
        workflow.add_node("verify", self._verify_node)
        workflow.add_node("decide_state", self._decide_state_node)
        workflow.add_node("apply_transition", self._apply_transition_node)
        workflow.add_node("finalize", self._finalize_node)

        workflow.set_entry_point("route_sender")

        # Supervisor replies never go through the customer path
        workflow.add_conditional_edges(
            "route_sender",
            self._sender_route,
            {
                "supervisor": "handle_supervisor_reply",
                "customer": "record_message"
            }
        )

        workflow.add_edge("record_message", "verify")
        workflow.add_edge("verify", "decide_state")
        workflow.add_edge("decide_state", "apply_transition")
        workflow.add_edge("apply_transition", "finalize")
        workflow.add_edge("handle_supervisor_reply", "finalize")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    async def _route_sender_node(self,
                                 state: SupportWorkflowState) -> SupportWorkflowState:
        inbound = state["inbound"]
        state["route"] = "supervisor" if self.router.is_supervisor(inbound.from_email) else "customer"
        return state

    def _sender_route(self, state: SupportWorkflowState) -> str:
        return state.get("route", "customer")

    async def _handle_supervisor_reply_node(self,
                                            state: SupportWorkflowState) -> SupportWorkflowState:
        """Hand a supervisor reply to the escalation response router"""
        inbound = state["inbound"]
        try:
            result = await self.router.handle_inbound_reply(
                inbound.from_email,
                inbound.body_text,
                thread_id=inbound.thread_id,
                provider_thread_ref=inbound.provider_thread_ref
            )
            if result is None:
                # Not an answer to an open escalation; keep it on the thread for the record
                if self.store.get_thread(inbound.thread_id):
                    self._save_inbound(inbound, MessageRole.SUPERVISOR)
                state["reply_result"] = {"processed": False, "matched": False}
            else:
                state["reply_result"] = result.model_dump(mode="json")
        except Exception as e:
            error_msg = f"Supervisor reply handling failed: {str(e)}"
            logger.error(error_msg)
            state["error_messages"].append(error_msg)
        return state

    async def _record_message_node(self,
                                   state: SupportWorkflowState) -> SupportWorkflowState:
        """Store the customer message, reopening a resolved thread"""
        inbound = state["inbound"]
        try:
            thread = self.store.ensure_thread(
                inbound.thread_id,
                subject=inbound.subject,
                customer_email=inbound.from_email,
                provider_thread_ref=inbound.provider_thread_ref
            )
            if thread.state == ThreadState.RESOLVED:
                await self.machine.reopen(thread.id)

            self._save_inbound(inbound, MessageRole.CUSTOMER)
            self.store.update_thread(thread.id, last_intent=state["classification"].intent)
        except Exception as e:
            error_msg = f"Recording message failed: {str(e)}"
            logger.error(error_msg)
            state["error_messages"].append(error_msg)
        return state

    async def _verify_node(self,
                           state: SupportWorkflowState) -> SupportWorkflowState:
        """Run the verification gate for protected intents"""
        inbound = state["inbound"]
        classification = state["classification"]

        if not self.gate.requires_verification(classification.intent):
            state["verification"] = {}
            return state

        try:
            result = await self.gate.verify(
                inbound.thread_id,
                email=inbound.from_email,
                message_text=inbound.body_text
            )
            state["verification"] = result.model_dump(mode="json")
        except Exception as e:
            error_msg = f"Verification failed: {str(e)}"
            logger.error(error_msg)
            state["error_messages"].append(error_msg)
            state["verification"] = {
                "status": VerificationStatus.PENDING.value,
                "error": str(e)
            }
        return state

    async def _decide_state_node(self,
                                 state: SupportWorkflowState) -> SupportWorkflowState:
        inbound = state["inbound"]
        classification = state["classification"]
        thread = self.store.get_thread(inbound.thread_id)
        if thread is None:
            state["decision"] = {}
            return state

        context = TransitionContext(
            current_state=thread.state,
            intent=classification.intent,
            confidence=classification.confidence,
            missing_required_info=classification.missing_required_info,
            policy_blocked=classification.policy_blocked,
            verification=state["verification"] or None
        )
        decision = self.machine.decide(context)
        state["decision"] = {
            "current": thread.state.value,
            "target": decision.target.value,
            "trigger": decision.trigger.value if decision.trigger else None,
            "reason": decision.reason
        }
        return state

    async def _apply_transition_node(self,
                                     state: SupportWorkflowState) -> SupportWorkflowState:
        """Apply the decided transition and write any verification prompt draft"""
        decision = state["decision"]
        thread_id = state["inbound"].thread_id
        if not decision:
            return state

        current = ThreadState(decision["current"])
        target = ThreadState(decision["target"])
        trigger = TransitionTrigger(decision["trigger"]) if decision["trigger"] else None

        if trigger is None or not is_allowed(current, target, trigger):
            state["transition"] = {"changed": False, "state": current.value}
        else:
            try:
                result = await self.machine.transition(
                    thread_id, target, trigger, reason=decision["reason"]
                )
                state["transition"] = {"changed": True, **result.model_dump(mode="json")}
            except Exception as e:
                error_msg = f"Transition failed: {str(e)}"
                logger.error(error_msg)
                state["error_messages"].append(error_msg)
                return state

        status = state["verification"].get("status")
        if target == ThreadState.AWAITING_INFO and status in [s.value for s in VERIFICATION_PROMPT_STATUSES]:
            draft = self.drafts.create_verification_prompt(thread_id, VerificationStatus(status))
            if draft:
                state["drafts"].append(draft.id)

        return state

    async def _finalize_node(self,
                             state: SupportWorkflowState) -> SupportWorkflowState:
        """Finalize the workflow"""
        errors = state.get("error_messages", [])
        state["workflow_status"] = "completed_with_errors" if errors else "completed"
        state["metadata"]["completed_at"] = utc_now().isoformat()
        state["metadata"]["total_errors"] = len(errors)

        if errors:
            logger.warning("Workflow for thread %s completed with %d errors",
                           state["inbound"].thread_id, len(errors))
        else:
            logger.info("Workflow for thread %s completed", state["inbound"].thread_id)
        return state

    def _save_inbound(self, inbound: InboundMessage, role: MessageRole) -> Message:
        return self.store.add_message(Message(
            id=new_id(),
            thread_id=inbound.thread_id,
            direction=MessageDirection.INBOUND,
            role=role,
            from_email=inbound.from_email,
            body_text=inbound.body_text,
            metadata={"subject": inbound.subject} if inbound.subject else {},
            created_at=inbound.received_at
        ))

    async def process_message(self, inbound: InboundMessage,
                              classification: ClassificationResult) -> Dict[str, Any]:
        """Process an inbound message through the workflow"""
        try:
            initial_state = SupportWorkflowState(
                inbound=inbound,
                classification=classification,
                route="customer",
                verification={},
                decision={},
                transition={},
                reply_result={},
                drafts=[],
                workflow_status="started",
                error_messages=[],
                metadata={"started_at": utc_now().isoformat()}
            )

            logger.info("Processing inbound message on thread %s (%s)",
                        inbound.thread_id, classification.intent)

            final_state = await self.workflow.ainvoke(initial_state)
            return dict(final_state)

        except Exception as e:
            error_msg = f"Workflow execution failed: {str(e)}"
            logger.error(error_msg)
            return {
                "inbound": inbound,
                "classification": classification,
                "workflow_status": "failed",
                "error_messages": [error_msg]
            }


# Global workflow instance
support_workflow = SupportInboxWorkflow()
