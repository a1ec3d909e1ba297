"""Participant sign-up and cancellation."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import (
    EventStatus, EventType, MerchandiseItem, PaymentStatus, Registration, RegistrationStatus,
)
from services import attendance, notifications, tickets
from services.lifecycle import derive_status
from services.payments import release_registration

logger = logging.getLogger(__name__)

ELIGIBILITY_TYPES = {
    "iiit": "IIIT",
    "non-iiit": "Non-IIIT",
}


def find_active(db, event_id: int, participant_id: int) -> Optional[Registration]:
    return (
        db.query(Registration)
        .filter(
            Registration.event_id == event_id,
            Registration.participant_id == participant_id,
            Registration.status.in_(RegistrationStatus.ACTIVE),
        )
        .first()
    )


def count_confirmed(db, event_id: int) -> int:
    """Registrations holding a seat: registered, plus those already checked in."""
    return (
        db.query(Registration)
        .filter(
            Registration.event_id == event_id,
            Registration.status.in_((RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED)),
        )
        .count()
    )


def validate_form_responses(fields, responses: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for field in fields or []:
        label = field["label"]
        value = responses.get(label)
        if isinstance(value, str):
            value = value.strip()
        if value in (None, "", []):
            if field.get("required"):
                raise ValidationError(f"'{label}' is required")
            continue
        options = field.get("options") or []
        if field.get("type") == "select" and options and value not in options:
            raise ValidationError(f"'{label}' must be one of: {', '.join(options)}")
        cleaned[label] = value
    return cleaned


def register(db, event, participant, notifier, merchandise_item_id: Optional[int] = None,
             quantity: int = 1, form_responses: Optional[Dict[str, Any]] = None,
             now: Optional[datetime] = None) -> Registration:
    now = now or datetime.utcnow()

    effective = derive_status(event.status, event.start_at, event.end_at, now)
    if effective not in EventStatus.OPEN_FOR_REGISTRATION:
        raise ConflictError(f"Event is not open for registration (status: {effective})")
    if event.registration_deadline and now > event.registration_deadline:
        raise ConflictError("Registration deadline has passed")

    required_type = ELIGIBILITY_TYPES.get(event.eligibility or "all")
    if required_type and participant.participant_type != required_type:
        raise ForbiddenError(f"This event is open to {required_type} participants only")

    if find_active(db, event.id, participant.id):
        raise ConflictError("You are already registered for this event")

    if event.registration_limit is not None and count_confirmed(db, event.id) >= event.registration_limit:
        raise ConflictError("Registration limit reached for this event")

    registration = Registration(
        event_id=event.id,
        participant_id=participant.id,
        registered_at=now,
    )

    if event.event_type == EventType.MERCHANDISE:
        if not merchandise_item_id:
            raise ValidationError("Select a merchandise item to order")
        item = (
            db.query(MerchandiseItem)
            .filter(MerchandiseItem.id == merchandise_item_id, MerchandiseItem.event_id == event.id)
            .first()
        )
        if not item:
            raise NotFoundError("Merchandise item not found for this event")
        if quantity > item.purchase_limit:
            raise ValidationError(f"You can order at most {item.purchase_limit} of {item.name}")
        if quantity > item.stock:
            raise ConflictError(f"Insufficient stock for {item.name}: {item.stock} left")
        # Stock is taken on approval, not here
        registration.merchandise_item_id = item.id
        registration.quantity = quantity
        registration.payment_amount = item.price * quantity
        registration.status = RegistrationStatus.PENDING
        registration.payment_status = PaymentStatus.PENDING_APPROVAL
        registration.form_responses = {}
    else:
        registration.form_responses = validate_form_responses(event.custom_form_fields, form_responses or {})
        registration.quantity = 1
        registration.payment_amount = event.registration_fee or 0
        registration.status = RegistrationStatus.REGISTERED
        registration.payment_status = PaymentStatus.NOT_REQUIRED

    db.add(registration)
    try:
        db.flush()
        if registration.status == RegistrationStatus.REGISTERED:
            tickets.issue_ticket(registration, now)
        db.commit()
    except IntegrityError:
        # A concurrent request created the active registration first
        db.rollback()
        raise ConflictError("You are already registered for this event")
    db.refresh(registration)
    logger.info(f"Participant {participant.id} registered for event {event.id} ({registration.status})")

    qr_png = tickets.render_png(registration.ticket_payload) if registration.ticket_payload else None
    notifications.notify_registered(notifier, registration, qr_png)
    return registration


def cancel_registration(db, event_id: int, participant, notifier) -> Registration:
    registration = find_active(db, event_id, participant.id)
    if not registration:
        raise NotFoundError("No active registration found for this event")
    return _cancel(db, registration, notifier)


def _cancel(db, registration, notifier) -> Registration:
    try:
        release_registration(db, registration)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(registration)
    logger.info(f"Registration {registration.id} cancelled")

    notifications.notify_registration_cancelled(notifier, registration)
    return registration


def override_status(db, registration, new_status: str, organizer, notifier) -> Registration:
    """Organizer-side status change for one registration of an owned event."""
    if new_status == RegistrationStatus.CANCELLED:
        if not registration.is_active:
            raise ConflictError(f"Registration cannot be cancelled (status: {registration.status})")
        return _cancel(db, registration, notifier)
    if new_status == RegistrationStatus.ATTENDED:
        return attendance.mark_manual(db, registration, organizer)
    raise ValidationError(f"Unsupported status: {new_status}")
