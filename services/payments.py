"""Merchandise payment review and the stock it governs.

Stock moves only here: decremented when a payment is approved and given back
when an approved registration is cancelled.
"""
import logging
import os
import uuid
from datetime import datetime
from typing import Optional

from config import settings
from errors import ConflictError, NotFoundError, ValidationError
from models import EventType, MerchandiseItem, PaymentStatus, Registration, RegistrationStatus
from services import notifications, tickets

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Payment proof not acceptable"

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


def reserve_stock(db, item_id: int, quantity: int) -> bool:
    """Atomically take `quantity` units; False when fewer remain. Nothing is written on False."""
    taken = (
        db.query(MerchandiseItem)
        .filter(MerchandiseItem.id == item_id, MerchandiseItem.stock >= quantity)
        .update({MerchandiseItem.stock: MerchandiseItem.stock - quantity}, synchronize_session=False)
    )
    return taken == 1


def restore_stock(db, item_id: int, quantity: int):
    (
        db.query(MerchandiseItem)
        .filter(MerchandiseItem.id == item_id)
        .update({MerchandiseItem.stock: MerchandiseItem.stock + quantity}, synchronize_session=False)
    )


def release_registration(db, registration):
    """Mark a registration cancelled and return any stock its approved order took. Caller commits."""
    if registration.payment_status == PaymentStatus.APPROVED and registration.merchandise_item_id:
        restore_stock(db, registration.merchandise_item_id, registration.quantity)
        logger.info(
            f"Restored {registration.quantity} unit(s) of item {registration.merchandise_item_id} "
            f"from registration {registration.id}"
        )
    registration.status = RegistrationStatus.CANCELLED


def save_payment_proof(db, registration, filename: Optional[str], content_type: Optional[str], data: bytes):
    """Store an uploaded proof and put the order back in the review queue."""
    if registration.event.event_type != EventType.MERCHANDISE:
        raise ValidationError("Payment proof is only required for merchandise orders")
    if registration.status != RegistrationStatus.PENDING or \
            registration.payment_status not in (PaymentStatus.PENDING_APPROVAL, PaymentStatus.REJECTED):
        raise ConflictError(f"Payment proof cannot be uploaded (payment status: {registration.payment_status})")
    if content_type not in settings.ALLOWED_PROOF_TYPES:
        raise ValidationError("Invalid file type. Allowed: JPEG, PNG, GIF, WebP, PDF")
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > settings.MAX_PROOF_BYTES:
        raise ValidationError(f"File too large. Maximum size is {settings.MAX_PROOF_BYTES // (1024 * 1024)}MB")

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    stored_name = f"proof-{registration.id}-{uuid.uuid4().hex[:8]}{_EXTENSIONS[content_type]}"
    path = os.path.join(settings.UPLOAD_DIR, stored_name)
    with open(path, "wb") as fh:
        fh.write(data)

    registration.payment_proof_path = path
    registration.payment_status = PaymentStatus.PENDING_APPROVAL
    registration.payment_rejection_reason = None
    db.commit()
    db.refresh(registration)
    logger.info(f"Payment proof '{filename}' stored for registration {registration.id}")
    return registration


def get_order(db, event, registration_id: int):
    registration = (
        db.query(Registration)
        .filter(Registration.id == registration_id, Registration.event_id == event.id)
        .first()
    )
    if not registration:
        raise NotFoundError("Order not found")
    return registration


def approve_payment(db, registration, reviewer, notifier, now: Optional[datetime] = None):
    now = now or datetime.utcnow()
    if registration.status != RegistrationStatus.PENDING or \
            registration.payment_status != PaymentStatus.PENDING_APPROVAL:
        raise ConflictError(f"Only orders awaiting approval can be approved (payment status: {registration.payment_status})")
    if not registration.merchandise_item_id:
        raise ValidationError("Order has no merchandise item")

    try:
        if not reserve_stock(db, registration.merchandise_item_id, registration.quantity):
            item = db.get(MerchandiseItem, registration.merchandise_item_id)
            remaining = item.stock if item else 0
            raise ConflictError(
                f"Insufficient stock for {item.name if item else 'item'}: "
                f"{remaining} left, {registration.quantity} requested"
            )
        registration.status = RegistrationStatus.REGISTERED
        registration.payment_status = PaymentStatus.APPROVED
        registration.payment_reviewed_by = reviewer.id
        registration.payment_reviewed_at = now
        registration.payment_rejection_reason = None
        tickets.issue_ticket(registration, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(registration)
    logger.info(f"Payment approved for registration {registration.id} by {reviewer.id}")

    notifications.notify_payment_approved(notifier, registration, tickets.render_png(registration.ticket_payload))
    return registration


def reject_payment(db, registration, reviewer, notifier, reason: Optional[str] = None,
                   now: Optional[datetime] = None):
    now = now or datetime.utcnow()
    if registration.status != RegistrationStatus.PENDING or \
            registration.payment_status != PaymentStatus.PENDING_APPROVAL:
        raise ConflictError(f"Only orders awaiting approval can be rejected (payment status: {registration.payment_status})")

    registration.payment_status = PaymentStatus.REJECTED
    registration.payment_rejection_reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
    registration.payment_reviewed_by = reviewer.id
    registration.payment_reviewed_at = now
    db.commit()
    db.refresh(registration)
    logger.info(f"Payment rejected for registration {registration.id} by {reviewer.id}")

    notifications.notify_payment_rejected(notifier, registration)
    return registration
