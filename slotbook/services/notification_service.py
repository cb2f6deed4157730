import logging
import smtplib
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

from slotbook.core.config import settings
from slotbook.models.appointment import AppointmentStatus

logger = logging.getLogger(__name__)

KIND_CREATED = "created"
KIND_EMAIL_CONFIRMED = "email_confirmed"
KIND_STATUS = "status"
KIND_RESCHEDULED = "rescheduled"


@dataclass(frozen=True)
class StatusChange:
    """Observation emitted for every lifecycle change; consumed by notifications."""

    appointment_id: int
    business_id: int
    client_email: str
    previous_status: AppointmentStatus | None
    new_status: AppointmentStatus
    appointment_date: date
    start_time: time
    kind: str = KIND_STATUS
    reason: str | None = None
    # naive UTC from the caller's Clock
    occurred_at: datetime | None = None


def _send_email_sync(to_email: str, subject: str, html_body: str) -> None:
    """Send email via SMTP (blocking). Use from background task."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), skipping send")
        return
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.from_email, [to_email], msg.as_string())
    logger.info("Email sent to %s", to_email)


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


_SUBJECTS = {
    KIND_CREATED: "Booking received",
    KIND_EMAIL_CONFIRMED: "Email confirmed",
    KIND_RESCHEDULED: "Appointment rescheduled",
    AppointmentStatus.PENDING: "Appointment pending",
    AppointmentStatus.CONFIRMED: "Appointment confirmed",
    AppointmentStatus.COMPLETED: "Appointment completed",
    AppointmentStatus.CANCELLED: "Appointment cancelled",
    AppointmentStatus.NO_SHOW: "Appointment marked as no-show",
}


def build_status_change_html(change: StatusChange) -> str:
    when = f"{change.appointment_date.strftime('%A, %B %d, %Y')} at {change.start_time.strftime('%H:%M')}"
    reason = ""
    if change.reason:
        reason = f"<p>Reason: {_html_escape(change.reason)}</p>"
    return (
        "<!DOCTYPE html><html><body>"
        f"<p>Your appointment on {when} is now <strong>{change.new_status.value}</strong>.</p>"
        f"{reason}"
        "</body></html>"
    )


def subject_for(change: StatusChange) -> str:
    key = change.kind if change.kind != KIND_STATUS else change.new_status
    return f"{settings.from_name} – {_SUBJECTS[key]}"


def send_status_change_email(change: StatusChange) -> bool:
    """Deliver one observation. Never raises: a committed transition must not be undone
    by a mail failure."""
    try:
        _send_email_sync(change.client_email, subject_for(change), build_status_change_html(change))
    except Exception as e:
        logger.exception("Failed to send status email for appointment %s: %s", change.appointment_id, e)
        return False
    return True


def build_confirmation_request_html(change: StatusChange, link: str) -> str:
    when = f"{change.appointment_date.strftime('%A, %B %d, %Y')} at {change.start_time.strftime('%H:%M')}"
    return (
        "<!DOCTYPE html><html><body>"
        f"<p>Please confirm your appointment on {when}.</p>"
        f'<p><a href="{_html_escape(link)}">Confirm my booking</a></p>'
        "</body></html>"
    )


def send_confirmation_request_email(change: StatusChange, token: str) -> bool:
    """Mail the raw confirmation token as a link (call from background task)."""
    link = f"{settings.confirmation_url}?{urlencode({'token': token})}"
    subject = f"{settings.from_name} – Confirm your booking"
    try:
        _send_email_sync(change.client_email, subject, build_confirmation_request_html(change, link))
    except Exception as e:
        logger.exception("Failed to send confirmation request for appointment %s: %s", change.appointment_id, e)
        return False
    return True


def dispatch_status_changes(changes: Iterable[StatusChange]) -> int:
    """Send a batch, returning how many were delivered (or skipped because mail is off)."""
    sent = 0
    for change in changes:
        logger.info(
            "Appointment %s: %s -> %s (%s)",
            change.appointment_id,
            change.previous_status.value if change.previous_status else "-",
            change.new_status.value,
            change.kind,
        )
        if send_status_change_email(change):
            sent += 1
    return sent
