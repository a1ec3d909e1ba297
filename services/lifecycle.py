"""Event status state machine.

    draft --publish--> published --start--> ongoing --end--> completed
    draft | published | ongoing --cancel--> cancelled
    published | ongoing --end early--> completed

`completed` and `cancelled` are terminal. Time-driven edges are applied by
`sweep`, which the scheduler runs at start-up and on a fixed interval; reads
use `derive_status` so they never wait for the next sweep.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from errors import ConflictError, ValidationError
from models import Event, EventStatus, EventType, Registration, RegistrationStatus
from services import notifications
from services.payments import release_registration

logger = logging.getLogger(__name__)


def derive_status(status: str, start_at: Optional[datetime], end_at: Optional[datetime],
                  now: Optional[datetime] = None) -> str:
    """Current status of an event computed from its stored status and schedule, without writing."""
    if status in EventStatus.TERMINAL or status == EventStatus.DRAFT:
        return status
    now = now or datetime.utcnow()
    if end_at and now >= end_at:
        return EventStatus.COMPLETED
    if start_at and now >= start_at:
        return EventStatus.ONGOING
    return status


def validate_schedule(start_at, end_at, deadline, now: Optional[datetime] = None, allow_past: bool = False):
    """Check registration_deadline <= start_at < end_at for whichever values are present."""
    now = now or datetime.utcnow()
    if not allow_past:
        for label, value in (("start date", start_at), ("end date", end_at), ("registration deadline", deadline)):
            if value and value < now:
                raise ValidationError(f"Event {label} cannot be in the past")
    if start_at and end_at and end_at <= start_at:
        raise ValidationError("Event end date must be after start date")
    if deadline and start_at and deadline > start_at:
        raise ValidationError("Registration deadline must be before event start date")


def sweep(db, now: Optional[datetime] = None, notifier=None) -> Dict[str, int]:
    """Persist the time-driven transitions. Safe to run repeatedly or concurrently."""
    now = now or datetime.utcnow()
    started = 0

    candidates = (
        db.query(Event)
        .filter(Event.status == EventStatus.PUBLISHED, Event.start_at <= now)
        .all()
    )
    for event in candidates:
        # Precondition re-checked in the UPDATE; a row another sweep already moved is skipped
        moved = (
            db.query(Event)
            .filter(Event.id == event.id, Event.status == EventStatus.PUBLISHED)
            .update({Event.status: EventStatus.ONGOING, Event.updated_at: now}, synchronize_session=False)
        )
        if moved:
            started += 1
            if notifier is not None:
                notifications.notify_event_starting(notifier, event)

    completed = (
        db.query(Event)
        .filter(Event.status == EventStatus.ONGOING, Event.end_at <= now)
        .update({Event.status: EventStatus.COMPLETED, Event.updated_at: now}, synchronize_session=False)
    )
    db.commit()

    if started or completed:
        logger.info(f"Lifecycle sweep: {started} event(s) started, {completed} event(s) completed")
    return {"started": started, "completed": completed}


def publish_event(db, event, notifier, now: Optional[datetime] = None):
    if event.status == EventStatus.PUBLISHED:
        raise ConflictError("Event is already published")
    if event.status != EventStatus.DRAFT:
        raise ConflictError(f"Only draft events can be published (current status: {event.status})")

    missing = [
        label for label, value in (
            ("start date", event.start_at),
            ("end date", event.end_at),
            ("registration deadline", event.registration_deadline),
        ) if value is None
    ]
    if missing:
        raise ValidationError(
            "Event must have start date, end date, and registration deadline before publishing "
            f"(missing: {', '.join(missing)})"
        )
    validate_schedule(event.start_at, event.end_at, event.registration_deadline, now=now, allow_past=True)
    if event.event_type == EventType.MERCHANDISE and not event.items:
        raise ValidationError("Merchandise events need at least one item before publishing")

    event.status = EventStatus.PUBLISHED
    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} published by organizer {event.organizer_id}")

    notifications.notify_event_published(notifier, event)
    return event


def cancel_event(db, event, notifier, now: Optional[datetime] = None):
    """Cancel the event and every active registration in one commit."""
    now = now or datetime.utcnow()
    if event.status in EventStatus.TERMINAL or derive_status(event.status, event.start_at, event.end_at, now) in EventStatus.TERMINAL:
        raise ConflictError(f"Event cannot be cancelled (current status: {event.status})")

    affected = (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status.in_(RegistrationStatus.ACTIVE))
        .all()
    )
    try:
        event.status = EventStatus.CANCELLED
        for registration in affected:
            release_registration(db, registration)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(event)
    logger.info(f"Event {event.id} cancelled; {len(affected)} registration(s) cancelled")

    for registration in affected:
        notifications.notify_event_cancelled(notifier, event, registration.participant)
    return event, len(affected)


def end_event_early(db, event, notifier, now: Optional[datetime] = None):
    now = now or datetime.utcnow()
    if event.status not in EventStatus.OPEN_FOR_REGISTRATION or \
            derive_status(event.status, event.start_at, event.end_at, now) == EventStatus.COMPLETED:
        raise ConflictError("Only published or ongoing events can be ended early")

    event.status = EventStatus.COMPLETED
    event.end_at = now
    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} ended early")

    registered = (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status == RegistrationStatus.REGISTERED)
        .all()
    )
    notifications.notify_event_ended_early(notifier, event, [r.participant for r in registered])
    return event
