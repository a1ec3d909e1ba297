"""Fire-and-forget email and webhook notifications.

Handlers call the `notify_*` helpers, which build a job from the ORM rows
while the session is still open and hand it to `NotificationDispatcher.emit`.
`emit` never blocks and never raises; delivery happens on a single worker
task owned by the app lifespan.
"""
import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Iterable, Optional, Union

import httpx

from config import settings
from errors import UpstreamError

logger = logging.getLogger(__name__)

FOOTER = "Felicity Event Management System"

COLORS = {
    "success": 0x22C55E,
    "info": 0x667EEA,
    "warning": 0xF59E0B,
    "error": 0xEF4444,
}


@dataclass
class EmailJob:
    to: str
    subject: str
    html: str
    qr_png: Optional[bytes] = None  # rendered inline as cid:ticket-qr


@dataclass
class WebhookJob:
    url: str
    payload: Dict[str, Any] = field(default_factory=dict)


Job = Union[EmailJob, WebhookJob]


def send_email(job: EmailJob) -> None:
    """Blocking SMTP send. Skipped when SMTP credentials are not configured."""
    if not settings.SMTP_USER or not settings.SMTP_PASS:
        logger.info(f"Email not configured; skipping '{job.subject}' to {job.to}")
        return

    msg = MIMEMultipart("related")
    msg["Subject"] = job.subject
    msg["From"] = settings.SMTP_FROM or settings.SMTP_USER
    msg["To"] = job.to
    msg.attach(MIMEText(job.html, "html", "utf-8"))
    if job.qr_png:
        qr_part = MIMEImage(job.qr_png, _subtype="png")
        qr_part.add_header("Content-ID", "<ticket-qr>")
        qr_part.add_header("Content-Disposition", "inline", filename="ticket-qr.png")
        msg.attach(qr_part)

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as server:
            server.ehlo()
            server.starttls()
            server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.sendmail(msg["From"], [job.to], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        raise UpstreamError(f"Email to {job.to} failed: {e}") from e
    logger.info(f"Email sent to {job.to}: {job.subject}")


async def post_webhook(job: WebhookJob) -> None:
    try:
        async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(job.url, json=job.payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise UpstreamError(f"Webhook delivery failed: {e}") from e
    logger.info("Webhook notification sent")


class NotificationDispatcher:
    """Bounded in-process queue drained by one worker task."""

    def __init__(self, maxsize: int = 0):
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._worker = asyncio.create_task(self._run())
        logger.info("Notification dispatcher started")

    async def stop(self):
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._loop = None
        logger.info("Notification dispatcher stopped")

    def emit(self, job: Job) -> None:
        if self._loop is None:
            logger.warning(f"Notification dispatcher not running; dropped {type(job).__name__}")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._enqueue(job)
            return
        # Called from the sweep thread
        try:
            self._loop.call_soon_threadsafe(self._enqueue, job)
        except RuntimeError:
            logger.warning(f"Event loop closed; dropped {type(job).__name__}")

    def _enqueue(self, job: Job) -> None:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning(f"Notification queue full; dropped {type(job).__name__}")

    async def _run(self):
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            except UpstreamError as e:
                logger.error(str(e))
            except Exception:
                logger.exception("Unexpected error delivering notification")
            finally:
                self._queue.task_done()

    async def deliver(self, job: Job) -> None:
        if isinstance(job, EmailJob):
            await asyncio.to_thread(send_email, job)
        else:
            await post_webhook(job)


# Message builders

def _email_html(heading: str, body: str) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); padding: 30px; text-align: center;">
    <h1 style="color: white; margin: 0;">{heading}</h1>
  </div>
  <div style="padding: 30px; background: #f9fafb;">{body}</div>
  <div style="text-align: center; padding: 15px; color: #999; font-size: 12px;">{FOOTER}</div>
</div>"""


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y, %H:%M UTC") if value else "TBD"


def _embed(title: str, description: str, color: str, fields: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "embeds": [{
            "title": title,
            "description": description,
            "color": COLORS[color],
            "fields": list(fields),
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "footer": {"text": FOOTER},
        }]
    }


def _organizer_webhook(organizer, toggle: Optional[str]) -> Optional[str]:
    if organizer is None or not organizer.webhook_url:
        return None
    if toggle and not getattr(organizer, toggle):
        return None
    return organizer.webhook_url


def notify_welcome(notifier, account):
    notifier.emit(EmailJob(
        to=account.email,
        subject="Welcome to Felicity Event Management System!",
        html=_email_html(
            "Welcome to Felicity!",
            f"<h2>Hi {html.escape(account.display_name)}!</h2>"
            "<p>Your account has been created. You can now browse events, follow clubs "
            "and collect QR tickets for the events you register for.</p>",
        ),
    ))


def notify_organizer_credentials(notifier, organizer, password: str):
    notifier.emit(EmailJob(
        to=organizer.email,
        subject="Your Felicity organizer account",
        html=_email_html(
            "Organizer Account Created",
            f"<h2>Hi {html.escape(organizer.display_name)}!</h2>"
            "<p>An administrator created an organizer account for you.</p>"
            f"<p><strong>Login email:</strong> {html.escape(organizer.email)}<br>"
            f"<strong>Password:</strong> {html.escape(password)}</p>"
            "<p>Please change your password after your first login.</p>",
        ),
    ))


def notify_registered(notifier, registration, qr_png: Optional[bytes] = None):
    """Confirmation email to the participant and the new-registration webhook to the organizer."""
    event = registration.event
    participant = registration.participant
    pending = registration.ticket_payload is None
    status_line = (
        "<p>Your order is awaiting payment approval. Upload your payment proof to complete it.</p>"
        if pending else
        "<p>Your ticket QR code is below. Present it at the venue.</p>"
        + ('<img src="cid:ticket-qr" alt="Ticket QR" width="200" height="200" />' if qr_png else "")
    )
    notifier.emit(EmailJob(
        to=participant.email,
        subject=f"Registration Confirmed: {event.name}",
        html=_email_html(
            "Registration Confirmed!",
            f"<h2>Hi {html.escape(participant.display_name)}!</h2>"
            f"<h3>{html.escape(event.name)}</h3>"
            f"<p>Date: {_fmt(event.start_at)}<br>Venue: {html.escape(event.venue or 'TBD')}</p>"
            + status_line,
        ),
        qr_png=qr_png,
    ))

    url = _organizer_webhook(event.organizer, "notify_on_registration")
    if url:
        fields = [
            {"name": "Participant", "value": participant.display_name, "inline": True},
            {"name": "Email", "value": participant.email, "inline": True},
            {"name": "Event Type", "value": event.event_type, "inline": True},
        ]
        if registration.item is not None:
            fields.append({
                "name": "Merchandise",
                "value": f"{registration.item.name} (x{registration.quantity}) - Rs.{registration.payment_amount:g}",
                "inline": False,
            })
        notifier.emit(WebhookJob(url, _embed(
            f"New Registration: {event.name}",
            "A new participant has registered for your event!",
            "success",
            fields,
        )))


def notify_registration_cancelled(notifier, registration):
    event = registration.event
    participant = registration.participant
    notifier.emit(EmailJob(
        to=participant.email,
        subject=f"Registration Cancelled: {event.name}",
        html=_email_html(
            "Registration Cancelled",
            f"<h2>Hi {html.escape(participant.display_name)},</h2>"
            f"<p>Your registration for <strong>{html.escape(event.name)}</strong> has been cancelled.</p>",
        ),
    ))
    url = _organizer_webhook(event.organizer, "notify_on_cancellation")
    if url:
        notifier.emit(WebhookJob(url, _embed(
            f"Registration Cancelled: {event.name}",
            "A participant has cancelled their registration.",
            "error",
            [
                {"name": "Participant", "value": participant.display_name, "inline": True},
                {"name": "Email", "value": participant.email, "inline": True},
            ],
        )))


def notify_event_created(notifier, event):
    organizer = event.organizer
    notifier.emit(EmailJob(
        to=organizer.contact_email or organizer.email,
        subject=f"Event Created: {event.name}",
        html=_email_html(
            "Event Created",
            f"<p><strong>{html.escape(event.name)}</strong> ({event.event_type}) was saved as a draft. "
            "Publish it once the schedule is final.</p>",
        ),
    ))


def notify_event_published(notifier, event):
    organizer = event.organizer
    notifier.emit(EmailJob(
        to=organizer.contact_email or organizer.email,
        subject=f"Event Published: {event.name}",
        html=_email_html(
            "Event Published!",
            f"<p><strong>{html.escape(event.name)}</strong> is now open for registration. "
            f"It starts on {_fmt(event.start_at)}.</p>",
        ),
    ))
    url = _organizer_webhook(organizer, None)
    if url:
        notifier.emit(WebhookJob(url, _embed(
            f"Event Published: {event.name}",
            "Registrations are now open.",
            "info",
            [
                {"name": "Start Time", "value": _fmt(event.start_at), "inline": True},
                {"name": "Venue", "value": event.venue or "TBD", "inline": True},
            ],
        )))


def notify_event_starting(notifier, event):
    url = _organizer_webhook(event.organizer, "notify_on_event_start")
    if url:
        notifier.emit(WebhookJob(url, _embed(
            f"Event Starting: {event.name}",
            "Your event is about to begin!",
            "warning",
            [
                {"name": "Start Time", "value": _fmt(event.start_at), "inline": True},
                {"name": "Venue", "value": event.venue or "TBD", "inline": True},
            ],
        )))


def notify_event_cancelled(notifier, event, participant):
    notifier.emit(EmailJob(
        to=participant.email,
        subject=f"Event Cancelled: {event.name}",
        html=_email_html(
            "Event Cancelled",
            f"<h2>Hi {html.escape(participant.display_name)},</h2>"
            f"<p><strong>{html.escape(event.name)}</strong> has been cancelled by "
            f"{html.escape(event.organizer.display_name)}. Your registration has been cancelled.</p>",
        ),
    ))


def notify_event_ended_early(notifier, event, participants):
    for participant in participants:
        notifier.emit(EmailJob(
            to=participant.email,
            subject=f"Event Ended: {event.name}",
            html=_email_html(
                "Event Ended Early",
                f"<h2>Hi {html.escape(participant.display_name)},</h2>"
                f"<p><strong>{html.escape(event.name)}</strong> was ended early by "
                f"{html.escape(event.organizer.display_name)}. "
                "Thank you for registering.</p>",
            ),
        ))


def notify_payment_approved(notifier, registration, qr_png: Optional[bytes] = None):
    event = registration.event
    participant = registration.participant
    notifier.emit(EmailJob(
        to=participant.email,
        subject=f"Payment Approved: {event.name}",
        html=_email_html(
            "Payment Approved!",
            f"<h2>Hi {html.escape(participant.display_name)}!</h2>"
            f"<p>Your payment for <strong>{html.escape(event.name)}</strong> was approved. Your ticket is below.</p>"
            + ('<img src="cid:ticket-qr" alt="Ticket QR" width="200" height="200" />' if qr_png else ""),
        ),
        qr_png=qr_png,
    ))


def notify_payment_rejected(notifier, registration):
    event = registration.event
    participant = registration.participant
    notifier.emit(EmailJob(
        to=participant.email,
        subject=f"Payment Rejected: {event.name}",
        html=_email_html(
            "Payment Rejected",
            f"<h2>Hi {html.escape(participant.display_name)},</h2>"
            f"<p>Your payment proof for <strong>{html.escape(event.name)}</strong> was rejected: "
            f"{html.escape(registration.payment_rejection_reason)}</p>"
            "<p>You can upload a new proof from your registrations page.</p>",
        ),
    ))


def webhook_test_job(url: str, organizer) -> WebhookJob:
    return WebhookJob(url, _embed(
        "Webhook Connected",
        f"Notifications for {organizer.display_name} will be posted to this channel.",
        "info",
        [],
    ))
