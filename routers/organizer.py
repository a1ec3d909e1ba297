from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse, StreamingResponse
from sqlalchemy.orm import Session
from typing import List, Literal, Optional
from datetime import datetime
import io
import os
import logging

from database import get_db
from errors import NotFoundError, UpstreamError, ValidationError
from models import Account, Event, PaymentStatus, Registration, RegistrationStatus
from schemas import (
    AccountOut, AttendanceStats, EventCreate, EventOut, EventUpdate, OrganizerProfileUpdate,
    PasswordChange, PaymentReject, RegistrationStatusUpdate, RegistrationWithParticipant,
    ScanRequest, ScanResult, WebhookSettings, WebhookTest,
)
from dependencies import (
    get_notifier, get_organizer_event, get_password_hash, organizer_only, verify_password,
)
from services import attendance, events as event_service, exports, lifecycle, notifications, payments, registrations

logger = logging.getLogger(__name__)

router = APIRouter()


def get_event_registration(db: Session, event: Event, registration_id: int) -> Registration:
    registration = (
        db.query(Registration)
        .filter(Registration.id == registration_id, Registration.event_id == event.id)
        .first()
    )
    if not registration:
        raise NotFoundError("Registration not found")
    return registration


def csv_response(content: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(content.encode("utf-8")),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Dashboard

@router.get("/dashboard")
async def dashboard(
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    events, analytics = event_service.organizer_dashboard(db, current_user)
    return {
        "events": [EventOut.model_validate(e) for e in events],
        "analytics": analytics,
    }


@router.get("/events/ongoing", response_model=List[EventOut])
async def ongoing_events(
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    return event_service.ongoing_events(db, current_user)


# Event management

@router.post("/events", response_model=EventOut, status_code=status.HTTP_201_CREATED)
async def create_event(
    event: EventCreate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only),
    notifier=Depends(get_notifier)
):
    """Create a new event. Events always start as drafts; publish separately."""
    return event_service.create_event(db, current_user, event.model_dump(), notifier)


@router.get("/events/{event_id}")
async def get_event(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    return {
        "event": EventOut.model_validate(event),
        "analytics": event_service.event_analytics(db, event),
    }


@router.put("/events/{event_id}", response_model=EventOut)
async def update_event(
    update: EventUpdate,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    return event_service.update_event(db, event, update.model_dump(exclude_unset=True))


@router.delete("/events/{event_id}")
async def delete_event(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    event_service.delete_event(db, event)
    return {"message": "Event deleted successfully"}


@router.post("/events/{event_id}/publish", response_model=EventOut)
async def publish_event(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    return lifecycle.publish_event(db, event, notifier)


@router.post("/events/{event_id}/cancel")
async def cancel_event(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    event, cancelled = lifecycle.cancel_event(db, event, notifier)
    return {
        "message": "Event cancelled",
        "event": EventOut.model_validate(event),
        "cancelled_registrations": cancelled,
    }


@router.post("/events/{event_id}/end", response_model=EventOut)
async def end_event_early(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    return lifecycle.end_event_early(db, event, notifier)


@router.get("/events/{event_id}/analytics")
async def event_analytics(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    return event_service.event_analytics(db, event)


# Registrations

@router.get("/events/{event_id}/participants", response_model=List[RegistrationWithParticipant])
async def event_participants(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    """Registrations that are not cancelled"""
    return (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status != RegistrationStatus.CANCELLED)
        .order_by(Registration.registered_at)
        .all()
    )


@router.get("/events/{event_id}/participants/export")
async def export_participants(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    rows = (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status != RegistrationStatus.CANCELLED)
        .order_by(Registration.registered_at)
        .all()
    )
    return csv_response(exports.participants_csv(rows), exports.csv_filename(event, "participants"))


@router.get("/events/{event_id}/registrations", response_model=List[RegistrationWithParticipant])
async def event_registrations(
    status_filter: Optional[Literal["pending", "registered", "attended", "cancelled"]] = Query(None, alias="status"),
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    query = db.query(Registration).filter(Registration.event_id == event.id)
    if status_filter:
        query = query.filter(Registration.status == status_filter)
    return query.order_by(Registration.registered_at.desc()).all()


@router.patch("/events/{event_id}/registrations/{registration_id}", response_model=RegistrationWithParticipant)
async def update_registration_status(
    registration_id: int,
    update: RegistrationStatusUpdate,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only),
    notifier=Depends(get_notifier)
):
    registration = get_event_registration(db, event, registration_id)
    return registrations.override_status(db, registration, update.status, current_user, notifier)


# Merchandise orders

@router.get("/events/{event_id}/orders", response_model=List[RegistrationWithParticipant])
async def merchandise_orders(
    payment_status: Optional[Literal["pending_approval", "approved", "rejected"]] = None,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    query = db.query(Registration).filter(
        Registration.event_id == event.id,
        Registration.payment_status != PaymentStatus.NOT_REQUIRED,
    )
    if payment_status:
        query = query.filter(Registration.payment_status == payment_status)
    return query.order_by(Registration.registered_at.desc()).all()


@router.get("/events/{event_id}/orders/{registration_id}/proof")
async def payment_proof(
    registration_id: int,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    registration = payments.get_order(db, event, registration_id)
    if not registration.payment_proof_path or not os.path.exists(registration.payment_proof_path):
        raise NotFoundError("No payment proof uploaded for this order")
    return FileResponse(registration.payment_proof_path)


@router.post("/events/{event_id}/orders/{registration_id}/approve", response_model=RegistrationWithParticipant)
async def approve_order(
    registration_id: int,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only),
    notifier=Depends(get_notifier)
):
    registration = payments.get_order(db, event, registration_id)
    return payments.approve_payment(db, registration, current_user, notifier)


@router.post("/events/{event_id}/orders/{registration_id}/reject", response_model=RegistrationWithParticipant)
async def reject_order(
    registration_id: int,
    body: PaymentReject,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only),
    notifier=Depends(get_notifier)
):
    registration = payments.get_order(db, event, registration_id)
    return payments.reject_payment(db, registration, current_user, notifier, body.reason)


# Attendance

@router.get("/events/{event_id}/attendance", response_model=AttendanceStats)
async def attendance_stats(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    return attendance.attendance_stats(db, event)


@router.post("/events/{event_id}/attendance/scan", response_model=ScanResult)
async def scan_ticket(
    scan: ScanRequest,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    """A repeated scan is reported with duplicate=true rather than as an error."""
    registration, duplicate = attendance.scan_ticket(db, event, scan.qr_data, current_user)
    if duplicate:
        message = f"Already checked in at {registration.attended_at.isoformat()}"
    else:
        message = f"{registration.participant.display_name} checked in"
    return {
        "duplicate": duplicate,
        "message": message,
        "attended_at": registration.attended_at,
        "registration": registration,
    }


@router.post("/events/{event_id}/attendance/{registration_id}/manual", response_model=RegistrationWithParticipant)
async def mark_attendance(
    registration_id: int,
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    registration = get_event_registration(db, event, registration_id)
    return attendance.mark_manual(db, registration, current_user)


@router.get("/events/{event_id}/attendance/export")
async def export_attendance(
    event: Event = Depends(get_organizer_event),
    db: Session = Depends(get_db)
):
    rows = (
        db.query(Registration)
        .filter(Registration.event_id == event.id, Registration.status != RegistrationStatus.CANCELLED)
        .order_by(Registration.registered_at)
        .all()
    )
    return csv_response(exports.attendance_csv(rows), exports.csv_filename(event, "attendance"))


# Profile and settings

@router.get("/profile", response_model=AccountOut)
async def get_profile(current_user: Account = Depends(organizer_only)):
    return current_user


@router.put("/profile", response_model=AccountOut)
async def update_profile(
    profile: OrganizerProfileUpdate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    updates = profile.model_dump(exclude_unset=True)
    if "organizer_name" in updates and not (updates["organizer_name"] or "").strip():
        raise ValidationError("Organizer name cannot be empty")
    for field, value in updates.items():
        setattr(current_user, field, value)
    db.commit()
    db.refresh(current_user)
    return current_user


@router.put("/webhook", response_model=AccountOut)
async def update_webhook_settings(
    webhook: WebhookSettings,
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    if webhook.webhook_url and not webhook.webhook_url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must start with http:// or https://")
    current_user.webhook_url = webhook.webhook_url or None
    current_user.notify_on_registration = webhook.notify_on_registration
    current_user.notify_on_cancellation = webhook.notify_on_cancellation
    current_user.notify_on_event_start = webhook.notify_on_event_start
    db.commit()
    db.refresh(current_user)
    return current_user


@router.post("/webhook/test")
async def test_webhook(
    body: WebhookTest,
    current_user: Account = Depends(organizer_only),
    notifier=Depends(get_notifier)
):
    """Deliver a test message now and report whether it arrived."""
    try:
        await notifier.deliver(notifications.webhook_test_job(body.webhook_url, current_user))
    except UpstreamError as e:
        logger.warning(str(e))
        return {"success": False, "message": "Webhook test failed. Check the URL and try again."}
    return {"success": True, "message": "Test message sent"}


@router.put("/password")
async def change_password(
    passwords: PasswordChange,
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    if not verify_password(passwords.current_password, current_user.password_hash):
        raise ValidationError("Current password is incorrect")
    current_user.password_hash = get_password_hash(passwords.new_password)
    db.commit()
    return {"message": "Password changed successfully"}


@router.post("/password-reset-request")
async def request_password_reset(
    db: Session = Depends(get_db),
    current_user: Account = Depends(organizer_only)
):
    """Flag the account so an admin can issue a new password."""
    current_user.password_reset_requested = True
    current_user.password_reset_requested_at = datetime.utcnow()
    db.commit()
    logger.info(f"Organizer {current_user.id} requested a password reset")
    return {"message": "Password reset request submitted to admin"}
