"""
Outbound collaborators: the mail transport and the PDF renderer.

Neither is implemented here. ``LogMailer`` records what would have been
sent so the engine can run end to end without SMTP.
"""
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

ATTACHMENT_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "csv": "text/csv",
}


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str


@dataclass
class MailResult:
    success: bool
    message_id: Optional[str] = None
    accepted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def report_subject(report_name: str) -> str:
    return f"{report_name} - Data Hub Report"


def alert_subject(alert_name: str) -> str:
    return f"Alert: {alert_name} - Data Hub"


def attachment_filename(report_name: str, delivery_format: str) -> str:
    return re.sub(r"\s+", "_", report_name) + "." + delivery_format


class Mailer(ABC):
    """Mail transport interface. Implementations return a MailResult or raise."""

    @abstractmethod
    async def send(self, recipients: List[str], subject: str, body: str,
                   attachment: Optional[Attachment] = None) -> MailResult:
        raise NotImplementedError


class LogMailer(Mailer):
    def __init__(self):
        self.sent: List[dict] = []

    async def send(self, recipients, subject, body, attachment=None):
        message_id = f"<{uuid.uuid4().hex}@reporting.local>"
        self.sent.append({
            "message_id": message_id,
            "recipients": list(recipients),
            "subject": subject,
            "body": body,
            "attachment": attachment,
        })
        logger.info(
            "[MAIL] %s -> %s (%s)", subject, ", ".join(recipients),
            f"{attachment.filename}, {len(attachment.content)} bytes" if attachment else "no attachment",
        )
        return MailResult(success=True, message_id=message_id, accepted=list(recipients))


class Renderer(ABC):
    """PDF rendering interface; called once per export, never retried here."""

    @abstractmethod
    async def render_pdf(self, report: dict, visualizations: List[dict], data: dict) -> bytes:
        raise NotImplementedError
