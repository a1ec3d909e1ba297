"""Event authoring for organizers and the public catalogue."""
import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from difflib import SequenceMatcher
from typing import List, Optional, Tuple

from sqlalchemy import String, cast, func, or_

from config import settings
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Account, Event, EventStatus, EventType, MerchandiseItem, PaymentStatus, Preference,
    Registration, RegistrationStatus, Role,
)
from services import notifications
from services.lifecycle import derive_status, validate_schedule

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.6
SORT_COLUMNS = {
    "start_at": Event.start_at,
    "name": Event.name,
    "created_at": Event.created_at,
}


def get_owned_event(db, event_id: int, organizer) -> Event:
    event = db.query(Event).filter(Event.id == event_id, Event.organizer_id == organizer.id).first()
    if not event:
        raise NotFoundError("Event not found or unauthorized")
    return event


def _build_items(items) -> List[MerchandiseItem]:
    return [
        MerchandiseItem(
            name=item["name"],
            variant=item.get("variant"),
            price=item.get("price", 0),
            stock=item.get("stock", 0),
            purchase_limit=item.get("purchase_limit", 1),
            position=position,
        )
        for position, item in enumerate(items)
    ]


def create_event(db, organizer, data: dict, notifier, now: Optional[datetime] = None) -> Event:
    """New events always start as drafts."""
    validate_schedule(data.get("start_at"), data.get("end_at"), data.get("registration_deadline"), now=now)

    event_type = data.get("event_type") or EventType.NORMAL
    items = data.pop("merchandise_items", None) or []
    form_fields = data.pop("custom_form_fields", None) or []
    if event_type == EventType.MERCHANDISE:
        form_fields = []
    else:
        items = []

    event = Event(
        organizer_id=organizer.id,
        name=data["name"],
        description=data.get("description") or "",
        event_type=event_type,
        category=data.get("category") or "General",
        eligibility=data.get("eligibility") or "all",
        tags=data.get("tags") or [],
        venue=data.get("venue") or "",
        image_url=data.get("image_url"),
        registration_fee=data.get("registration_fee") or 0,
        registration_limit=data.get("registration_limit"),
        start_at=data.get("start_at"),
        end_at=data.get("end_at"),
        registration_deadline=data.get("registration_deadline"),
        status=EventStatus.DRAFT,
        custom_form_fields=form_fields,
    )
    event.items = _build_items(items)
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} created by organizer {organizer.id}")

    notifications.notify_event_created(notifier, event)
    return event


def update_event(db, event, updates: dict, now: Optional[datetime] = None) -> Event:
    """Apply a partial update; `updates` holds only the fields the caller sent."""
    now = now or datetime.utcnow()
    if event.status in EventStatus.TERMINAL:
        raise ConflictError(f"Cannot edit a {event.status} event")

    if "event_type" in updates and updates["event_type"] != event.event_type:
        raise ValidationError("Event type cannot be changed after creation")
    updates.pop("event_type", None)

    if "registration_limit" in updates and updates["registration_limit"] != event.registration_limit \
            and event.status != EventStatus.DRAFT:
        raise ValidationError("Cannot modify registration limit after event is published")

    has_registrations = db.query(Registration).filter(Registration.event_id == event.id).count() > 0
    if "custom_form_fields" in updates:
        if has_registrations:
            raise ConflictError("Cannot modify registration form after participants have registered. Form is locked.")
        if event.event_type != EventType.NORMAL and updates["custom_form_fields"]:
            raise ValidationError("Custom form fields apply to normal events only")
    if "merchandise_items" in updates:
        if event.event_type != EventType.MERCHANDISE:
            raise ValidationError("Merchandise items apply to merchandise events only")
        if has_registrations:
            raise ConflictError("Cannot modify merchandise items after orders have been placed")

    if "name" in updates and not (updates["name"] or "").strip():
        raise ValidationError("Event name is required")

    schedule = (("start date", "start_at"), ("end date", "end_at"), ("registration deadline", "registration_deadline"))
    if event.status != EventStatus.DRAFT:
        cleared = [label for label, key in schedule if key in updates and updates[key] is None]
        if cleared:
            raise ValidationError(f"Published events must keep their schedule (cannot clear: {', '.join(cleared)})")
    for label, key in schedule:
        value = updates.get(key)
        if value is not None and value != getattr(event, key) and value < now:
            raise ValidationError(f"Event {label} cannot be in the past")
    validate_schedule(
        updates.get("start_at", event.start_at),
        updates.get("end_at", event.end_at),
        updates.get("registration_deadline", event.registration_deadline),
        allow_past=True,
    )

    items = updates.pop("merchandise_items", None)
    if items is not None:
        event.items = _build_items(items)
    for field, value in updates.items():
        setattr(event, field, value)

    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} updated ({', '.join(sorted(updates)) or 'items'})")
    return event


def delete_event(db, event):
    if event.status not in (EventStatus.DRAFT, EventStatus.CANCELLED):
        raise ConflictError(f"Only draft or cancelled events can be deleted (current status: {event.status})")
    db.delete(event)
    db.commit()
    logger.info(f"Event {event.id} deleted")


# Analytics

def event_analytics(db, event) -> dict:
    registrations = db.query(Registration).filter(Registration.event_id == event.id).all()
    by_status = Counter(r.status for r in registrations)
    by_day = Counter(r.registered_at.date().isoformat() for r in registrations)
    approved = [r for r in registrations if r.payment_status == PaymentStatus.APPROVED]
    paid_normal = [
        r for r in registrations
        if r.payment_status == PaymentStatus.NOT_REQUIRED
        and r.status in (RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED)
    ]
    confirmed = by_status[RegistrationStatus.REGISTERED] + by_status[RegistrationStatus.ATTENDED]

    return {
        "total_registrations": len(registrations),
        "registered": by_status[RegistrationStatus.REGISTERED],
        "pending": by_status[RegistrationStatus.PENDING],
        "attended": by_status[RegistrationStatus.ATTENDED],
        "cancelled": by_status[RegistrationStatus.CANCELLED],
        "pending_payments": sum(1 for r in registrations if r.payment_status == PaymentStatus.PENDING_APPROVAL),
        "revenue": sum(r.payment_amount for r in approved + paid_normal),
        "merchandise_sold": sum(r.quantity for r in approved),
        "registrations_by_day": dict(sorted(by_day.items())),
        "registration_limit": event.registration_limit,
        "capacity_utilization": round(confirmed / event.registration_limit * 100) if event.registration_limit else None,
    }


def organizer_dashboard(db, organizer, now: Optional[datetime] = None) -> Tuple[List[Event], dict]:
    now = now or datetime.utcnow()
    events = (
        db.query(Event)
        .filter(Event.organizer_id == organizer.id)
        .order_by(Event.created_at.desc())
        .all()
    )
    effective = {e.id: derive_status(e.status, e.start_at, e.end_at, now) for e in events}
    registrations = (
        db.query(Registration)
        .join(Event, Registration.event_id == Event.id)
        .filter(Event.organizer_id == organizer.id)
        .all()
    )
    approved = [r for r in registrations if r.payment_status == PaymentStatus.APPROVED]
    paid_normal = [
        r for r in registrations
        if r.payment_status == PaymentStatus.NOT_REQUIRED
        and r.status in (RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED)
    ]
    statuses = Counter(effective.values())

    analytics = {
        "total_events": len(events),
        "draft_events": statuses[EventStatus.DRAFT],
        "published_events": statuses[EventStatus.PUBLISHED],
        "ongoing_events": statuses[EventStatus.ONGOING],
        "completed_events": statuses[EventStatus.COMPLETED],
        "cancelled_events": statuses[EventStatus.CANCELLED],
        "total_registrations": sum(1 for r in registrations if r.status != RegistrationStatus.CANCELLED),
        "total_revenue": sum(r.payment_amount for r in approved + paid_normal),
        "merchandise_sales": sum(r.quantity for r in approved),
        "attended_count": sum(1 for r in registrations if r.status == RegistrationStatus.ATTENDED),
    }
    return events, analytics


def ongoing_events(db, organizer, now: Optional[datetime] = None) -> List[Event]:
    now = now or datetime.utcnow()
    events = (
        db.query(Event)
        .filter(Event.organizer_id == organizer.id, Event.status.in_(EventStatus.OPEN_FOR_REGISTRATION))
        .order_by(Event.start_at)
        .all()
    )
    return [e for e in events if derive_status(e.status, e.start_at, e.end_at, now) == EventStatus.ONGOING]


# Public catalogue

def _open_events_query(db, now: datetime):
    """Published or ongoing events whose end has not passed."""
    return db.query(Event).filter(
        Event.status.in_(EventStatus.OPEN_FOR_REGISTRATION),
        or_(Event.end_at.is_(None), Event.end_at > now),
    )


def _similarity(search: str, event) -> float:
    needle = search.lower().strip()
    candidates = [event.name] + event.name.split() + list(event.tags or [])
    return max(SequenceMatcher(None, needle, c.lower().strip()).ratio() for c in candidates if c)


def _participant_preferences(db, user):
    if user is None or user.role != Role.PARTICIPANT:
        return None
    return db.query(Preference).filter(Preference.participant_id == user.id).first()


def list_public_events(db, user=None, search: Optional[str] = None, category: Optional[str] = None,
                       event_type: Optional[str] = None, organizer_id: Optional[int] = None,
                       start_from: Optional[datetime] = None, start_to: Optional[datetime] = None,
                       sort_by: str = "start_at", sort_order: str = "asc", page: int = 1, limit: int = 10,
                       now: Optional[datetime] = None):
    """Returns (events, total, registration status by event id)."""
    now = now or datetime.utcnow()
    query = _open_events_query(db, now)
    if category:
        query = query.filter(Event.category == category)
    if event_type:
        query = query.filter(Event.event_type == event_type)
    if organizer_id:
        query = query.filter(Event.organizer_id == organizer_id)
    if start_from:
        query = query.filter(Event.start_at >= start_from)
    if start_to:
        query = query.filter(Event.start_at <= start_to)

    column = SORT_COLUMNS.get(sort_by, Event.start_at)
    query = query.order_by(column.desc() if sort_order == "desc" else column.asc(), Event.id)

    if search:
        pattern = f"%{search.strip()}%"
        events = query.filter(or_(
            Event.name.ilike(pattern),
            Event.description.ilike(pattern),
            cast(Event.tags, String).ilike(pattern),
        )).all()
        if not events:
            scored = [(e, _similarity(search, e)) for e in query.all()]
            events = [e for e, score in sorted(scored, key=lambda pair: -pair[1]) if score >= FUZZY_THRESHOLD]
            logger.debug(f"Fuzzy fallback for '{search}' matched {len(events)} event(s)")
    else:
        events = query.all()

    preference = _participant_preferences(db, user)
    if preference is not None:
        followed = {o.id for o in preference.followed_organizers}
        interests = {i.lower() for i in preference.interests or []}

        def boost(event):
            score = 2 if event.organizer_id in followed else 0
            if interests & {t.lower() for t in event.tags or []} or (event.category or "").lower() in interests:
                score += 1
            return -score

        events = sorted(events, key=boost)

    total = len(events)
    start = (page - 1) * limit
    page_events = events[start:start + limit]

    statuses = {}
    if user is not None and user.role == Role.PARTICIPANT and page_events:
        rows = (
            db.query(Registration)
            .filter(
                Registration.participant_id == user.id,
                Registration.event_id.in_([e.id for e in page_events]),
            )
            .order_by(Registration.registered_at)
            .all()
        )
        for registration in rows:
            statuses[registration.event_id] = registration.status
    return page_events, total, statuses


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def trending_events(db, now: Optional[datetime] = None) -> List[Tuple[Event, int]]:
    now = now or datetime.utcnow()
    since = now - timedelta(hours=settings.TRENDING_WINDOW_HOURS)
    counts = (
        db.query(Registration.event_id, func.count(Registration.id).label("recent"))
        .filter(Registration.registered_at >= since)
        .group_by(Registration.event_id)
        .subquery()
    )
    rows = (
        _open_events_query(db, now)
        .join(counts, counts.c.event_id == Event.id)
        .add_columns(counts.c.recent)
        .order_by(counts.c.recent.desc(), Event.id)
        .limit(settings.TRENDING_LIMIT)
        .all()
    )
    return [(event, recent) for event, recent in rows]


def categories(db, now: Optional[datetime] = None) -> List[str]:
    now = now or datetime.utcnow()
    rows = _open_events_query(db, now).with_entities(Event.category).distinct().all()
    return sorted(c for (c,) in rows if c)


def active_organizers(db) -> List[Account]:
    return (
        db.query(Account)
        .filter(Account.role == Role.ORGANIZER, Account.is_active.is_(True))
        .order_by(Account.organizer_name)
        .all()
    )


def organizer_with_events(db, organizer_id: int, now: Optional[datetime] = None):
    now = now or datetime.utcnow()
    organizer = (
        db.query(Account)
        .filter(Account.id == organizer_id, Account.role == Role.ORGANIZER, Account.is_active.is_(True))
        .first()
    )
    if not organizer:
        raise NotFoundError("Organizer not found")
    events = (
        _open_events_query(db, now)
        .filter(Event.organizer_id == organizer.id)
        .order_by(Event.start_at)
        .all()
    )
    past = (
        db.query(Event)
        .filter(Event.organizer_id == organizer.id, Event.status == EventStatus.COMPLETED)
        .order_by(Event.start_at.desc())
        .all()
    )
    return organizer, events, past


def public_event(db, event_id: int) -> Event:
    """Any event except drafts; drafts are visible to their organizer only."""
    event = db.query(Event).filter(Event.id == event_id, Event.status != EventStatus.DRAFT).first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def latest_registration(db, event_id: int, participant_id: int) -> Optional[Registration]:
    return (
        db.query(Registration)
        .filter(Registration.event_id == event_id, Registration.participant_id == participant_id)
        .order_by(Registration.registered_at.desc(), Registration.id.desc())
        .first()
    )
