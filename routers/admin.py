from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
import secrets
import string

from database import get_db
from errors import ConflictError, NotFoundError
from models import Account, Event, EventStatus, Registration, Role
from schemas import (
    AccountOut, AdminInit, EventListItem, OrganizerCreate, OrganizerStatusUpdate, OrganizerUpdate,
    PasswordReset,
)
from dependencies import admin_only, get_notifier, get_password_hash
from services import notifications

logger = logging.getLogger(__name__)

router = APIRouter()

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%&*"


def get_organizer(db: Session, organizer_id: int) -> Account:
    organizer = db.query(Account).filter(Account.id == organizer_id, Account.role == Role.ORGANIZER).first()
    if not organizer:
        raise NotFoundError("Organizer not found")
    return organizer


def generate_password(length: int = 12) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


@router.get("/dashboard")
async def dashboard_stats(
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    """Platform-wide counts"""
    accounts = db.query(Account)
    events = db.query(Event)
    return {
        "stats": {
            "total_participants": accounts.filter(Account.role == Role.PARTICIPANT).count(),
            "total_organizers": accounts.filter(Account.role == Role.ORGANIZER).count(),
            "total_events": events.count(),
            "total_registrations": db.query(Registration).count(),
            "published_events": events.filter(Event.status.in_(EventStatus.OPEN_FOR_REGISTRATION)).count(),
            "draft_events": events.filter(Event.status == EventStatus.DRAFT).count(),
            "pending_password_resets": accounts.filter(
                Account.role == Role.ORGANIZER,
                Account.password_reset_requested.is_(True),
            ).count(),
        }
    }


# Organizer management

@router.post("/organizers", response_model=AccountOut, status_code=status.HTTP_201_CREATED)
async def create_organizer(
    organizer: OrganizerCreate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only),
    notifier=Depends(get_notifier)
):
    """Create an organizer account and email the credentials"""
    email = organizer.email.lower()
    if db.query(Account).filter(Account.email == email).first():
        raise ConflictError("Email already registered")

    account = Account(
        role=Role.ORGANIZER,
        email=email,
        password_hash=get_password_hash(organizer.password),
        organizer_name=organizer.organizer_name.strip(),
        category=organizer.category or "",
        description=organizer.description or "",
        contact_email=(organizer.contact_email or email).lower(),
        is_active=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Admin {current_user.id} created organizer {account.id}")

    notifications.notify_organizer_credentials(notifier, account, organizer.password)
    return account


@router.get("/organizers", response_model=List[AccountOut])
async def list_organizers(
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    return (
        db.query(Account)
        .filter(Account.role == Role.ORGANIZER)
        .order_by(Account.created_at.desc())
        .all()
    )


@router.put("/organizers/{organizer_id}", response_model=AccountOut)
async def update_organizer(
    organizer_id: int,
    update: OrganizerUpdate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    organizer = get_organizer(db, organizer_id)
    for field, value in update.model_dump(exclude_unset=True).items():
        # Blank values keep the current one
        if value:
            setattr(organizer, field, value)
    db.commit()
    db.refresh(organizer)
    return organizer


@router.patch("/organizers/{organizer_id}/toggle-status", response_model=AccountOut)
async def toggle_organizer_status(
    organizer_id: int,
    update: Optional[OrganizerStatusUpdate] = None,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    """Enable or disable an organizer. Without a body the current state flips."""
    organizer = get_organizer(db, organizer_id)
    if update is None or update.is_active is None:
        organizer.is_active = not organizer.is_active
    else:
        organizer.is_active = update.is_active
    db.commit()
    db.refresh(organizer)
    logger.info(f"Organizer {organizer.id} {'enabled' if organizer.is_active else 'disabled'}")
    return organizer


@router.patch("/organizers/{organizer_id}/status", response_model=AccountOut)
async def set_organizer_status(
    organizer_id: int,
    update: OrganizerStatusUpdate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    organizer = get_organizer(db, organizer_id)
    if update.is_active is not None:
        organizer.is_active = update.is_active
        db.commit()
        db.refresh(organizer)
    return organizer


@router.delete("/organizers/{organizer_id}")
async def delete_organizer(
    organizer_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    """Delete an organizer with all of its events, registrations and forum messages"""
    organizer = get_organizer(db, organizer_id)
    event_count = len(organizer.events)
    db.delete(organizer)
    db.commit()
    logger.info(f"Admin {current_user.id} deleted organizer {organizer_id} and {event_count} events")
    return {
        "message": "Organizer and all associated data deleted successfully",
        "deleted_events": event_count,
    }


# Password resets

@router.get("/password-reset-requests", response_model=List[AccountOut])
async def password_reset_requests(
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    return (
        db.query(Account)
        .filter(Account.role == Role.ORGANIZER, Account.password_reset_requested.is_(True))
        .order_by(Account.password_reset_requested_at)
        .all()
    )


@router.post("/organizers/{organizer_id}/reset-password")
async def reset_organizer_password(
    organizer_id: int,
    reset: PasswordReset,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    organizer = get_organizer(db, organizer_id)
    organizer.password_hash = get_password_hash(reset.new_password)
    organizer.password_reset_requested = False
    organizer.password_reset_requested_at = None
    db.commit()
    logger.info(f"Admin {current_user.id} reset the password of organizer {organizer.id}")
    return {"message": "Password reset successfully"}


@router.get("/generate-password")
async def random_password(current_user: Account = Depends(admin_only)):
    return {"password": generate_password()}


# Read-only views

@router.get("/participants", response_model=List[AccountOut])
async def list_participants(
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    return (
        db.query(Account)
        .filter(Account.role == Role.PARTICIPANT)
        .order_by(Account.created_at.desc())
        .all()
    )


@router.get("/events", response_model=List[EventListItem])
async def list_events(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: Account = Depends(admin_only)
):
    """Get all events (admin only)"""
    return db.query(Event).order_by(Event.created_at.desc()).offset(skip).limit(limit).all()


@router.post("/initialize", status_code=status.HTTP_201_CREATED)
async def initialize_admin(init: AdminInit, db: Session = Depends(get_db)):
    """One-time bootstrap of the admin account. No authentication."""
    if db.query(Account).filter(Account.role == Role.ADMIN).first():
        raise ConflictError("Admin account already exists")
    email = init.email.lower()
    if db.query(Account).filter(Account.email == email).first():
        raise ConflictError("Email already registered")

    admin = Account(
        role=Role.ADMIN,
        email=email,
        password_hash=get_password_hash(init.password),
        admin_name=init.admin_name or "System Admin",
        privileges="full",
    )
    db.add(admin)
    db.commit()
    logger.info(f"Admin account {admin.id} initialized")
    return {"message": "Admin account created successfully"}
