import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from config.settings import settings
from support_inbox.exceptions import ConfigurationError, ExternalServiceError

logger = logging.getLogger(__name__)


class MessagingChannel:
    """Outbound mail contract used by the escalation notifier"""

    def is_configured(self) -> bool:
        return False

    async def send(self, to: str, subject: str, html_body: str,
                   thread_ref: Optional[str] = None) -> str:
        raise NotImplementedError

    async def apply_label(self, thread_ref: str, label: str) -> bool:
        return False


class SmtpMessagingChannel(MessagingChannel):
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 username: Optional[str] = None, password: Optional[str] = None,
                 sender: Optional[str] = None, starttls: Optional[bool] = None):
        self.host = settings.SMTP_HOST if host is None else host
        self.port = port or settings.SMTP_PORT
        self.username = settings.SMTP_USERNAME if username is None else username
        self.password = settings.SMTP_PASSWORD if password is None else password
        self.sender = sender or settings.SUPPORT_EMAIL
        self.starttls = settings.SMTP_STARTTLS if starttls is None else starttls
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.host)

    def _build_message(self, to: str, subject: str, html_body: str,
                       thread_ref: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self.sender.split("@")[-1])
        if thread_ref:
            msg["In-Reply-To"] = thread_ref
            msg["References"] = thread_ref
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
            if self.starttls:
                s.starttls(context=context)
            if self.username:
                s.login(self.username, self.password)
            s.send_message(msg)

    async def send(self, to: str, subject: str, html_body: str,
                   thread_ref: Optional[str] = None) -> str:
        if not self.is_configured():
            raise ConfigurationError("SMTP_HOST is not set")
        msg = self._build_message(to, subject, html_body, thread_ref)
        try:
            await asyncio.wait_for(asyncio.to_thread(self._send_sync, msg),
                                   timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("SMTP send timed out") from e
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalServiceError(f"SMTP send failed: {e}") from e
        logger.info("Sent mail %s", msg["Message-ID"])
        return msg["Message-ID"]

    async def apply_label(self, thread_ref: str, label: str) -> bool:
        # SMTP has no notion of labels
        return False


# Global messaging channel instance
messaging_channel = SmtpMessagingChannel()
