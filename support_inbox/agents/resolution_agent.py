from typing import Dict, Any, Optional
import logging
import random
from support_inbox.exceptions import ConfigurationError, ExternalServiceError
from support_inbox.models.schemas import (
    Message, MessageDirection, MessageRole, VerificationStatus
)
from support_inbox.services.llm_service import GeminiLLMService, llm_service
from support_inbox.services.store import SupportStore, new_id, support_store
from config.settings import settings

logger = logging.getLogger(__name__)

RELAY_PREFIXES = [
    "Great news! I heard back from our team lead.\n\n",
    "Thanks for your patience! I checked with our team lead and here's what I found out.\n\n",
    "I got an answer for you from our team lead.\n\n",
]

ACKNOWLEDGMENT_TEXT = "I'm looking into this and will have an update for you shortly."

GUIDED_DRAFT_CONTEXT_CHARS = 1500

GUIDED_DRAFT_SYSTEM_PROMPT = """You are a friendly customer support agent.
A supervisor has provided guidance on how to respond to this customer. Write a
professional, helpful response that incorporates the guidance.

Guidelines:
- Be warm and helpful
- Don't mention the supervisor by name unless the guidance explicitly says to
- Keep the response focused and concise
- Sign off as "{signature}\""""


def _verification_prompts(signature: str) -> Dict[VerificationStatus, str]:
    return {
        VerificationStatus.PENDING: (
            "Hey! I'd love to help you with this.\n\n"
            "To pull up your order info, could you share your order number? "
            "You can find it in your confirmation email (it looks like #12345).\n\n"
            f"{signature}"
        ),
        VerificationStatus.NOT_FOUND: (
            "Hmm, I couldn't find that order in our system. A few things that might help:\n\n"
            "- Double-check the order number (sometimes there's a typo)\n"
            "- Was it placed under a different email address?\n"
            "- Check your confirmation email for the exact order number\n\n"
            "Mind taking another look and sending it over?\n\n"
            f"{signature}"
        ),
        VerificationStatus.MISMATCH: (
            "I found the order, but the email you're writing from doesn't match what's on file. "
            "Just want to make sure I'm helping the right person!\n\n"
            "Could you either:\n"
            "- Reply from the email you used when you ordered, or\n"
            "- Let me know some other details to verify (like the shipping address or items ordered)\n\n"
            f"{signature}"
        ),
    }


class DraftAgent:
    """Agent responsible for customer-facing drafts saved for operator review"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 llm: Optional[GeminiLLMService] = None):
        self.name = "Draft Agent"
        self.store = store or support_store
        self.llm = llm or llm_service
        self.signature = settings.AGENT_SIGNATURE
        self.prompts = _verification_prompts(self.signature)

    def verification_prompt(self, status: VerificationStatus) -> Optional[str]:
        """Customer-facing prompt for a verification outcome, if any"""
        return self.prompts.get(status)

    def create_verification_prompt(self, thread_id: str,
                                   status: VerificationStatus) -> Optional[Message]:
        body = self.verification_prompt(status)
        if body is None:
            return None
        return self._save_draft(thread_id, body, {
            "created_via": "verification_prompt",
            "verification_status": status.value
        })

    def create_relay_draft(self, thread_id: str, content: str,
                           attribution: str = "supervisor",
                           created_by: Optional[str] = None) -> Message:
        """Wrap a supervisor answer with a natural intro and save it as a draft"""
        if not content or not content.strip():
            raise ValueError("Relay content is empty")
        body = f"{random.choice(RELAY_PREFIXES)}{content.strip()}"
        return self._save_draft(thread_id, body, {
            "relay_response": True,
            "attribution": attribution,
            "created_by": created_by,
            "created_via": "escalation_response"
        })

    def create_acknowledgment_draft(self, thread_id: str,
                                    created_by: Optional[str] = None) -> Message:
        body = f"{ACKNOWLEDGMENT_TEXT}\n\n{self.signature}"
        return self._save_draft(thread_id, body, {
            "acknowledgment": True,
            "created_by": created_by,
            "created_via": "escalation_response"
        })

    async def generate_guided_draft(self, thread_id: str, guidance: str) -> Message:
        """
        Draft a reply from the customer's own messages plus supervisor guidance
        """
        if not self.llm.is_configured():
            raise ConfigurationError("Text generation is not configured")

        thread = self.store.require_thread(thread_id)
        customer_text = "\n\n".join(
            m.body_text for m in self.store.list_messages(thread_id)
            if m.direction == MessageDirection.INBOUND and m.role == MessageRole.CUSTOMER
        )

        prompt = f"""Customer's question about: {thread.subject or "Support request"}

Customer said:
{customer_text[-GUIDED_DRAFT_CONTEXT_CHARS:]}

Supervisor guidance:
{guidance}

Write a response to the customer:"""

        draft_text = await self.llm.generate_response(
            prompt,
            system_prompt=GUIDED_DRAFT_SYSTEM_PROMPT.format(signature=self.signature),
            temperature=settings.DRAFT_TEMPERATURE,
            max_tokens=800
        )
        if not draft_text or not draft_text.strip():
            raise ExternalServiceError("Draft generation returned no text")

        return self._save_draft(thread_id, draft_text.strip(), {
            "generated_from_escalation": True,
            "guidance": guidance[:500],
            "created_via": "escalation_response"
        })

    def _save_draft(self, thread_id: str, body: str, metadata: Dict[str, Any]) -> Message:
        draft = self.store.add_message(Message(
            id=new_id(),
            thread_id=thread_id,
            direction=MessageDirection.OUTBOUND,
            role=MessageRole.DRAFT,
            from_email=settings.SUPPORT_EMAIL,
            body_text=body,
            metadata=metadata
        ))
        self.store.add_event(thread_id, "DRAFT_CREATED", {
            "message_id": draft.id,
            "created_via": metadata.get("created_via")
        })
        logger.info("Draft %s saved for thread %s", draft.id, thread_id)
        return draft


# Global draft agent instance
draft_agent = DraftAgent()
