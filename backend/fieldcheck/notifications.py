from __future__ import annotations

import logging
import smtplib
import socket
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, List, Optional, Protocol, Sequence

import requests

from .config import Settings
from .database import Database
from .errors import ExternalServiceFailure, InvalidArgument
from .models import EquipmentStatus, Inspection
from .reports import ReportGenerator

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send_email_with_pdf(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str,
        pdf_filename: str,
        pdf_bytes: bytes,
    ) -> str: ...


@dataclass
class SmtpMailer:
    """Sends report emails through the SMTP relay named in settings."""

    settings: Settings

    def send_email_with_pdf(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str,
        pdf_filename: str,
        pdf_bytes: bytes,
    ) -> str:
        if not self.settings.smtp_configured:
            raise ExternalServiceFailure("SMTP is not configured")
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.settings.SMTP_FROM
        message["To"] = to
        message_id = make_msgid(domain=self.settings.SMTP_HOST)
        message["Message-ID"] = message_id
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        message.add_attachment(pdf_bytes, maintype="application", subtype="pdf", filename=pdf_filename)

        timeout = self.settings.EXTERNAL_TIMEOUT_SECONDS
        try:
            if self.settings.SMTP_PORT == 465:
                client = smtplib.SMTP_SSL(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=timeout)
            else:
                client = smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=timeout)
            with client as smtp:
                smtp.ehlo()
                if self.settings.SMTP_PORT != 465 and self.settings.SMTP_USE_TLS:
                    smtp.starttls()
                    smtp.ehlo()
                if self.settings.SMTP_USER:
                    smtp.login(self.settings.SMTP_USER, self.settings.SMTP_PASSWORD)
                smtp.send_message(message)
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            raise ExternalServiceFailure(f"Failed to send email to {to}: {exc}") from exc
        logger.info("Report email sent to %s (%s)", to, message_id)
        return message_id


@dataclass
class TaskNotifier:
    """Tells the external task tracker that an inspection finished."""

    settings: Settings
    session: requests.Session = field(default_factory=requests.Session)

    @property
    def configured(self) -> bool:
        return bool(self.settings.TASK_WEBHOOK_URL)

    def notify_completed(self, inspection: Inspection, equipment_status: Optional[EquipmentStatus] = None) -> bool:
        """POST the completion to the tracker; ``False`` when there is nothing to send."""
        if not self.configured or not (inspection.task_id or inspection.freight_id):
            return False
        payload = {
            "inspectionId": inspection.id,
            "equipmentId": inspection.equipment_id,
            "taskId": inspection.task_id,
            "freightId": inspection.freight_id,
            "status": inspection.status.value,
            "equipmentStatus": equipment_status.value if equipment_status else None,
            "completedAt": inspection.completed_at.isoformat() if inspection.completed_at else None,
        }
        try:
            response = self.session.post(
                self.settings.TASK_WEBHOOK_URL,
                json=payload,
                timeout=self.settings.EXTERNAL_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExternalServiceFailure(f"Task notification failed for inspection {inspection.id}: {exc}") from exc
        logger.info("Task tracker notified for inspection %s", inspection.id)
        return True


@dataclass
class PostCommitEffect:
    name: str
    action: Callable[[], object]


@dataclass
class EffectResult:
    name: str
    succeeded: bool
    error: Optional[str] = None


class EffectRunner:
    """Runs post-commit effects one by one; a failing effect never stops the rest."""

    def run(self, effects: Sequence[PostCommitEffect]) -> List[EffectResult]:
        results = []
        for effect in effects:
            try:
                effect.action()
            except ExternalServiceFailure as exc:
                logger.warning("Post-commit effect %s failed: %s", effect.name, exc)
                results.append(EffectResult(name=effect.name, succeeded=False, error=str(exc)))
            except Exception as exc:
                logger.exception("Post-commit effect %s raised unexpectedly", effect.name)
                results.append(EffectResult(name=effect.name, succeeded=False, error=str(exc)))
            else:
                results.append(EffectResult(name=effect.name, succeeded=True))
        return results


@dataclass
class NotificationDispatcher:
    database: Database
    reports: ReportGenerator
    mailer: Mailer
    notifier: TaskNotifier
    settings: Settings

    def send_report(self, inspection_id: int, to: str) -> str:
        if not to or "@" not in to:
            raise InvalidArgument("A recipient email address is required")
        detail = self.reports.load_detail(inspection_id)
        content = self.reports.generate_email_content(detail)
        pdf_bytes = self.reports.generate_pdf(detail)
        return self.mailer.send_email_with_pdf(
            to=to,
            subject=content.subject,
            html=content.html,
            text=content.text,
            pdf_filename=content.filename,
            pdf_bytes=pdf_bytes,
        )

    def completion_effects(
        self,
        inspection: Inspection,
        equipment_status: Optional[EquipmentStatus] = None,
    ) -> List[PostCommitEffect]:
        effects = []
        if self.notifier.configured and (inspection.task_id or inspection.freight_id):
            effects.append(
                PostCommitEffect(
                    name="task-notification",
                    action=lambda: self.notifier.notify_completed(inspection, equipment_status),
                )
            )
        recipient = self.settings.fallback_recipient()
        if recipient:
            effects.append(
                PostCommitEffect(name="report-email", action=lambda: self.send_report(inspection.id, recipient))
            )
        return effects
