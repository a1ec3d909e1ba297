"""Check-in: registered -> attended, at most once per registration."""
import logging
from datetime import datetime
from typing import Optional, Tuple

from errors import ConflictError, NotFoundError, ValidationError
from models import AttendanceMethod, Registration, RegistrationStatus
from services.tickets import parse_ticket

logger = logging.getLogger(__name__)


def _mark_attended(db, registration, organizer, method: str, now: datetime) -> bool:
    """Conditional write; False when the registration was no longer `registered`."""
    moved = (
        db.query(Registration)
        .filter(Registration.id == registration.id, Registration.status == RegistrationStatus.REGISTERED)
        .update({
            Registration.status: RegistrationStatus.ATTENDED,
            Registration.attended_at: now,
            Registration.attendance_method: method,
            Registration.marked_by: organizer.id,
        }, synchronize_session=False)
    )
    db.commit()
    db.refresh(registration)
    return moved == 1


def scan_ticket(db, event, qr_data: str, organizer,
                now: Optional[datetime] = None) -> Tuple[Registration, bool]:
    """Check in the holder of a scanned ticket. Returns (registration, duplicate)."""
    now = now or datetime.utcnow()
    data = parse_ticket(qr_data)
    if data["event_id"] != event.id:
        raise ValidationError("QR code is for a different event")

    query = db.query(Registration).filter(
        Registration.event_id == event.id,
        Registration.ticket_id == data["ticket_id"],
        Registration.status.in_((RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED)),
    )
    if data.get("participant_id") is not None:
        query = query.filter(Registration.participant_id == data["participant_id"])
    registration = query.first()
    if not registration:
        raise NotFoundError("No valid registration found for this QR code")

    if registration.status == RegistrationStatus.ATTENDED:
        return registration, True

    if not _mark_attended(db, registration, organizer, AttendanceMethod.QR_SCAN, now):
        # Lost a race with a concurrent scan
        if registration.status == RegistrationStatus.ATTENDED:
            return registration, True
        raise NotFoundError("No valid registration found for this QR code")

    logger.info(f"Registration {registration.id} checked in by QR scan at event {event.id}")
    return registration, False


def mark_manual(db, registration, organizer, now: Optional[datetime] = None) -> Registration:
    now = now or datetime.utcnow()
    if registration.status == RegistrationStatus.ATTENDED:
        raise ConflictError("Already marked as attended")
    if registration.status != RegistrationStatus.REGISTERED:
        raise ConflictError(f"Only registered participants can be marked as attended (status: {registration.status})")

    if not _mark_attended(db, registration, organizer, AttendanceMethod.MANUAL, now):
        raise ConflictError("Already marked as attended")

    logger.info(f"Registration {registration.id} marked attended manually by {organizer.id}")
    return registration


def attendance_stats(db, event) -> dict:
    registrations = (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status != RegistrationStatus.CANCELLED)
        .all()
    )
    total = len(registrations)
    checked_in = [r for r in registrations if r.status == RegistrationStatus.ATTENDED]
    not_attended = sum(1 for r in registrations if r.status == RegistrationStatus.REGISTERED)
    checked_in.sort(key=lambda r: r.attended_at, reverse=True)

    return {
        "total": total,
        "attended": len(checked_in),
        "not_attended": not_attended,
        "attendance_rate": round(len(checked_in) / total * 100) if total else 0,
        "by_method": {
            AttendanceMethod.QR_SCAN: sum(1 for r in checked_in if r.attendance_method == AttendanceMethod.QR_SCAN),
            AttendanceMethod.MANUAL: sum(1 for r in checked_in if r.attendance_method == AttendanceMethod.MANUAL),
        },
        "recent_check_ins": checked_in[:10],
        "registrations": registrations,
    }
