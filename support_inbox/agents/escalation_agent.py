from datetime import timedelta
from html import escape
from typing import List, Optional, Tuple
import logging
from support_inbox.models.schemas import (
    EscalationEmail, EscalationSendResult, Message, MessageRole, Thread,
    VerificationRecord, VerificationStatus, utc_now
)
from support_inbox.services.messaging import MessagingChannel, messaging_channel
from support_inbox.services.store import SupportStore, new_id, support_store
from support_inbox.services.text_patterns import sanitize_pii
from config.settings import settings

logger = logging.getLogger(__name__)

RECENT_MESSAGE_COUNT = 6
RECENT_MESSAGE_CHARS = 300

REPLY_TAGS = [
    ("[INSTRUCTION]", "Add a standing instruction for the agent"),
    ("[RESOLVE]", "Mark the thread resolved; any text is drafted to the customer"),
    ("[DRAFT]", "Have the agent draft a reply from your guidance"),
    ("[KB]", "Mark the answer as knowledge-base material"),
    ("[TAKEOVER]", "Take the thread over personally"),
]

FLAGGED_INTERNAL_NOTE = (
    "This customer has been flagged and requires human review before proceeding. "
    "Check the customer notes and order history for context."
)


class EscalationNotifier:
    """Agent responsible for notifying the supervisor about escalated threads"""

    def __init__(self,
                 store: Optional[SupportStore] = None,
                 channel: Optional[MessagingChannel] = None,
                 supervisor_email: Optional[str] = None,
                 dedup_hours: Optional[int] = None):
        self.name = "Escalation Notifier"
        self.store = store or support_store
        self.channel = channel or messaging_channel
        self.supervisor_email = supervisor_email or settings.SUPERVISOR_EMAIL
        self.dedup_hours = dedup_hours or settings.ESCALATION_DEDUP_HOURS
        self.frustration_keywords = settings.FRUSTRATION_KEYWORDS

    async def notify(self, thread_id: str, reason: str) -> EscalationSendResult:
        """
        Send one escalation email for the thread unless one already went out
        inside the deduplication window
        """
        thread = self.store.require_thread(thread_id)
        subject, html_body = self.build_email(thread, reason)

        email = EscalationEmail(
            id=new_id(),
            thread_id=thread_id,
            sent_to=self.supervisor_email,
            subject=subject,
            html_body=html_body,
            reason=reason
        )
        window_start = utc_now() - timedelta(hours=self.dedup_hours)
        if not self.store.reserve_escalation_email(email, window_start):
            logger.info("Escalation email for thread %s deduplicated", thread_id)
            return EscalationSendResult(sent=False, deduplicated=True)

        try:
            provider_message_id = await self.channel.send(
                self.supervisor_email, subject, html_body, thread.provider_thread_ref
            )
        except Exception as e:
            # Free the window so the next escalation can try again
            self.store.delete_escalation_email(email.id)
            logger.error("Escalation email for thread %s failed: %s", thread_id, e)
            self.store.add_event(thread_id, "ESCALATION_EMAIL_FAILED", {"error": str(e)})
            return EscalationSendResult(sent=False, error=str(e))

        self.store.set_escalation_provider_id(email.id, provider_message_id)

        label_applied = False
        try:
            label_applied = await self.channel.apply_label(
                thread.provider_thread_ref or thread.id, settings.ESCALATION_LABEL
            )
        except Exception as e:
            logger.warning("Could not label thread %s: %s", thread_id, e)

        self.store.add_event(thread_id, "ESCALATION_EMAIL_SENT", {
            "escalation_email_id": email.id,
            "reason": reason,
            "label_applied": label_applied
        })
        logger.info("Escalation email sent for thread %s", thread_id)

        return EscalationSendResult(
            sent=True,
            escalation_email_id=email.id,
            provider_message_id=provider_message_id,
            label_applied=label_applied
        )

    def build_email(self, thread: Thread, reason: str) -> Tuple[str, str]:
        """Build subject and HTML body for the escalation email"""
        messages = [m for m in self.store.list_messages(thread.id) if m.role != MessageRole.DRAFT]
        verification = self.store.get_latest_verification(thread.id)
        customer_text = " ".join(
            m.body_text for m in messages if m.role == MessageRole.CUSTOMER
        )

        days_open = 0
        if messages:
            days_open = max((utc_now() - messages[0].created_at).days, 0)

        subject = (
            f"[Escalation] {thread.subject or 'Support Request'} - "
            f"{thread.customer_email or 'unknown customer'}"
        )

        sections = [
            f"<h2>Escalation: {escape(thread.subject or 'Support Request')}</h2>",
            "<h3>Reason</h3>",
            f"<p>{escape(reason)}</p>",
            "<h3>Issue Analysis</h3>",
            "<ul>",
            f"<li>Intent: {escape(thread.last_intent or 'unknown')}</li>",
            f"<li>Frustration level: {self.frustration_level(customer_text)}</li>",
            f"<li>Messages: {len(messages)}</li>",
            f"<li>Days since first contact: {days_open}</li>",
            "</ul>",
            "<h3>Customer Profile</h3>",
            self._profile_html(thread, verification),
            "<h3>Recent Conversation</h3>",
            self._conversation_html(messages),
            "<h3>How to Respond</h3>",
            "<p>Reply to this email. Start your reply with one of these tags:</p>",
            "<ul>",
        ]
        sections.extend(
            f"<li><code>{tag}</code> - {escape(description)}</li>"
            for tag, description in REPLY_TAGS
        )
        sections.append("<li>Or just reply normally and your answer is drafted to the customer</li>")
        sections.append("</ul>")

        return subject, "\n".join(sections)

    def frustration_level(self, text: str) -> str:
        """Rule-based frustration level: low, medium or high"""
        lower_text = (text or "").lower()
        hits = sum(1 for keyword in self.frustration_keywords if keyword in lower_text)
        if hits >= 2 or lower_text.count("!!") >= 2:
            return "high"
        if hits == 1:
            return "medium"
        return "low"

    @staticmethod
    def _profile_html(thread: Thread, verification: Optional[VerificationRecord]) -> str:
        lines = [f"<p><strong>{escape(thread.customer_email or 'Unknown')}</strong></p>", "<ul>"]
        if verification is None:
            lines.append("<li>Verification: unverified</li>")
        else:
            lines.append(f"<li>Verification: {verification.status.value}</li>")
            if verification.order_number:
                lines.append(f"<li>Order: {escape(verification.order_number)}</li>")
            if verification.customer:
                lines.append(f"<li>Name: {escape(verification.customer.name or 'Unknown')}</li>")
                lines.append(f"<li>Orders: {verification.customer.total_orders}</li>")
                lines.append(f"<li>Total spent: ${verification.customer.total_spent:.2f}</li>")
            if verification.flags:
                # Internal only; never shown to the customer
                lines.append(
                    "<li><strong>Flags:</strong> "
                    f"{escape(', '.join(verification.flags))}</li>"
                )
            if verification.error:
                lines.append(f"<li>Verification error: {escape(verification.error)}</li>")
        lines.append("</ul>")
        if verification is not None and verification.status == VerificationStatus.FLAGGED:
            lines.append(f"<p><strong>[FLAGGED]</strong> {FLAGGED_INTERNAL_NOTE}</p>")
        return "\n".join(lines)

    @staticmethod
    def _conversation_html(messages: List[Message]) -> str:
        if not messages:
            return "<p><em>No messages</em></p>"
        items = []
        for message in messages[-RECENT_MESSAGE_COUNT:]:
            speaker = "Customer" if message.role == MessageRole.CUSTOMER else message.role.value.title()
            body = sanitize_pii(message.body_text)[:RECENT_MESSAGE_CHARS]
            items.append(f"<li><strong>{speaker}:</strong> {escape(body)}</li>")
        return "<ul>\n" + "\n".join(items) + "\n</ul>"


# Global escalation notifier instance
escalation_notifier = EscalationNotifier()
