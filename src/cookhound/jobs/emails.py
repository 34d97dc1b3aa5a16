from __future__ import annotations

from typing import Any
from urllib.parse import quote

from cookhound.config import get_settings
from cookhound.integrations import EmailAddress, EmailMessage, Mailer
from cookhound.queue.base_job import BaseJob
from cookhound.queue.interfaces import Job
from cookhound.utils.log import get_logger

from .email_templates import render
from .names import JobNames, QueueNames

log = get_logger("email-jobs")

# Mail relays have transient outages; three tries with 5s/10s gaps.
QUEUE_OPTIONS: dict[str, Any] = {
    "default_job_options": {
        "attempts": 3,
        "backoff": {"type": "exponential", "delay": 5_000},
    }
}


def _header_value(value: Any) -> str:
    # Values that can end up in mail headers: no line breaks.
    return " ".join(str(value or "").split())


def _sender() -> EmailAddress:
    s = get_settings()
    return EmailAddress(address=str(s.mail_from_address), name=str(s.mail_from_name))


def _recipient(data: dict[str, Any]) -> EmailAddress:
    to = data.get("to") or {}
    address = str(to.get("address") or "").strip()
    if not address:
        raise ValueError("recipient address is required")
    return EmailAddress(address=address, name=_header_value(to.get("name")))


class _EmailJob(BaseJob):
    queue_name = QueueNames.EMAILS
    queue_options = QUEUE_OPTIONS

    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer


class SendVerificationEmailJob(_EmailJob):
    """data: {"token": str, "to": {"address": str, "name": str}, "locale": str}"""

    job_name = JobNames.SEND_VERIFICATION_EMAIL

    async def handle(self, job: Job) -> None:
        data = dict(job.data or {})
        to = _recipient(data)
        log.debug("verification_email_sending", job_id=job.id)

        origin = str(get_settings().app_origin).rstrip("/")
        link = (
            f"{origin}/auth/callback/verify-email"
            f"?token={quote(str(data.get('token') or ''), safe='')}&email={quote(to.address, safe='')}"
        )
        email = render("email_verification", data.get("locale"), name=to.name, link=link)
        await self._mailer.send(EmailMessage(sender=_sender(), to=to, subject=email.subject, html=email.html))
        log.info("verification_email_sent", job_id=job.id)


class SendPasswordResetEmailJob(_EmailJob):
    """data: {"token": str, "to": {"address": str, "name": str}, "locale": str}"""

    job_name = JobNames.SEND_PASSWORD_RESET_EMAIL

    async def handle(self, job: Job) -> None:
        data = dict(job.data or {})
        to = _recipient(data)
        origin = str(get_settings().app_origin).rstrip("/")
        link = f"{origin}/auth/reset-password?token={quote(str(data.get('token') or ''), safe='')}"
        email = render("reset_password", data.get("locale"), name=to.name, link=link)
        await self._mailer.send(EmailMessage(sender=_sender(), to=to, subject=email.subject, html=email.html))
        log.info("password_reset_email_sent", job_id=job.id)


class SendContactFormJob(_EmailJob):
    """data: {"name", "email", "subject", "message", "locale"}; delivered to the support inbox."""

    job_name = JobNames.SEND_CONTACT_FORM

    async def handle(self, job: Job) -> None:
        data = dict(job.data or {})
        name = _header_value(data.get("name"))
        email_addr = _header_value(data.get("email"))
        subject = _header_value(data.get("subject"))
        message = str(data.get("message") or "")

        email = render(
            "contact_form",
            data.get("locale"),
            name=name,
            email=email_addr,
            subject=subject,
            message=message,
        )
        await self._mailer.send(
            EmailMessage(
                sender=EmailAddress(address=str(get_settings().mail_from_address), name="Cookhound Contact Form"),
                to=EmailAddress(address=str(get_settings().contact_email), name="Cookhound Support"),
                subject=email.subject,
                html=email.html,
                text=f"Name: {name}\nEmail: {email_addr}\nSubject: {subject}\n\nMessage:\n{message}",
            )
        )
        log.info("contact_form_email_sent", job_id=job.id)
