from fastapi import APIRouter, Depends, File, Response, UploadFile, status
from sqlalchemy.orm import Session
from typing import List
from datetime import datetime
import logging

from config import settings
from database import get_db
from errors import ConflictError, NotFoundError, ValidationError
from models import Account, Event, EventStatus, Preference, Registration, RegistrationStatus, Role
from schemas import (
    AccountOut, EventOut, OrganizerPublic, ParticipantProfileUpdate, ParticipantRegistration,
    PasswordChange, PreferenceOut, PreferenceUpdate, RegistrationCreate, RegistrationOut,
)
from dependencies import get_notifier, get_password_hash, participant_only, verify_password
from services import payments, registrations, tickets

logger = logging.getLogger(__name__)

router = APIRouter()


def get_or_create_preference(db: Session, participant: Account) -> Preference:
    preference = db.query(Preference).filter(Preference.participant_id == participant.id).first()
    if preference is None:
        preference = Preference(participant_id=participant.id, interests=[])
        db.add(preference)
        db.flush()
    return preference


def get_own_registration(db: Session, registration_id: int, participant: Account) -> Registration:
    registration = (
        db.query(Registration)
        .filter(Registration.id == registration_id, Registration.participant_id == participant.id)
        .first()
    )
    if not registration:
        raise NotFoundError("Registration not found")
    return registration


def get_active_organizer(db: Session, organizer_id: int) -> Account:
    organizer = (
        db.query(Account)
        .filter(Account.id == organizer_id, Account.role == Role.ORGANIZER, Account.is_active.is_(True))
        .first()
    )
    if not organizer:
        raise NotFoundError("Organizer not found")
    return organizer


# Profile

@router.get("/profile", response_model=AccountOut)
async def get_profile(current_user: Account = Depends(participant_only)):
    return current_user


@router.put("/profile", response_model=AccountOut)
async def update_profile(
    profile: ParticipantProfileUpdate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    """Participant type is fixed at sign-up; IIIT participants cannot change their college."""
    updates = profile.model_dump(exclude_unset=True)
    if "college_name" in updates and current_user.participant_type == "IIIT" \
            and updates["college_name"] != current_user.college_name:
        raise ValidationError("College name cannot be changed for IIIT participants")
    for field in ("first_name", "last_name"):
        if field in updates and not (updates[field] or "").strip():
            raise ValidationError(f"{field.replace('_', ' ').capitalize()} cannot be empty")

    for field, value in updates.items():
        setattr(current_user, field, value.strip() if isinstance(value, str) else value)
    db.commit()
    db.refresh(current_user)
    return current_user


@router.put("/password")
async def change_password(
    passwords: PasswordChange,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    if not verify_password(passwords.current_password, current_user.password_hash):
        raise ValidationError("Current password is incorrect")
    current_user.password_hash = get_password_hash(passwords.new_password)
    db.commit()
    return {"message": "Password changed successfully"}


# Preferences and follows

@router.get("/preferences", response_model=PreferenceOut)
async def get_preferences(
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    preference = db.query(Preference).filter(Preference.participant_id == current_user.id).first()
    if preference is None:
        return PreferenceOut()
    return preference


@router.put("/preferences", response_model=PreferenceOut)
async def update_preferences(
    update: PreferenceUpdate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    preference = get_or_create_preference(db, current_user)
    # Keep order, drop blanks and duplicates
    preference.interests = list(dict.fromkeys(i.strip() for i in update.interests if i.strip()))
    db.commit()
    db.refresh(preference)
    return preference


@router.post("/follow/{organizer_id}", response_model=PreferenceOut)
async def follow_organizer(
    organizer_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    organizer = get_active_organizer(db, organizer_id)
    preference = get_or_create_preference(db, current_user)
    if organizer in preference.followed_organizers:
        raise ConflictError("Already following this organizer")
    preference.followed_organizers.append(organizer)
    db.commit()
    db.refresh(preference)
    return preference


@router.delete("/follow/{organizer_id}", response_model=PreferenceOut)
async def unfollow_organizer(
    organizer_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    preference = db.query(Preference).filter(Preference.participant_id == current_user.id).first()
    followed = {o.id: o for o in preference.followed_organizers} if preference else {}
    if organizer_id not in followed:
        raise ConflictError("You are not following this organizer")
    preference.followed_organizers.remove(followed[organizer_id])
    db.commit()
    db.refresh(preference)
    return preference


@router.get("/following", response_model=List[OrganizerPublic])
async def followed_organizers(
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    preference = db.query(Preference).filter(Preference.participant_id == current_user.id).first()
    return preference.followed_organizers if preference else []


# Registrations

@router.post("/events/{event_id}/register", response_model=RegistrationOut, status_code=status.HTTP_201_CREATED)
async def register_for_event(
    event_id: int,
    payload: RegistrationCreate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only),
    notifier=Depends(get_notifier)
):
    event = db.query(Event).filter(Event.id == event_id, Event.status != EventStatus.DRAFT).first()
    if not event:
        raise NotFoundError("Event not found")
    return registrations.register(
        db,
        event,
        current_user,
        notifier,
        merchandise_item_id=payload.merchandise_item_id,
        quantity=payload.quantity,
        form_responses=payload.form_responses,
    )


@router.post("/events/{event_id}/cancel", response_model=RegistrationOut)
async def cancel_registration(
    event_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only),
    notifier=Depends(get_notifier)
):
    return registrations.cancel_registration(db, event_id, current_user, notifier)


@router.get("/registrations", response_model=List[ParticipantRegistration])
async def my_registrations(
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    return (
        db.query(Registration)
        .filter(Registration.participant_id == current_user.id)
        .order_by(Registration.registered_at.desc())
        .all()
    )


@router.get("/registrations/{registration_id}/ticket")
async def ticket_image(
    registration_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    """QR ticket as a PNG image"""
    registration = get_own_registration(db, registration_id, current_user)
    if registration.status not in (RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED) \
            or not registration.ticket_payload:
        raise NotFoundError("No ticket issued for this registration")
    return Response(
        content=tickets.render_png(registration.ticket_payload),
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="{registration.ticket_id}.png"'},
    )


@router.post("/registrations/{registration_id}/payment-proof", response_model=RegistrationOut)
async def upload_payment_proof(
    registration_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    registration = get_own_registration(db, registration_id, current_user)
    # One byte past the limit is enough to reject an oversized upload
    data = await file.read(settings.MAX_PROOF_BYTES + 1)
    return payments.save_payment_proof(db, registration, file.filename, file.content_type, data)


@router.get("/dashboard")
async def dashboard(
    db: Session = Depends(get_db),
    current_user: Account = Depends(participant_only)
):
    now = datetime.utcnow()
    active = (
        db.query(Registration)
        .join(Event, Registration.event_id == Event.id)
        .filter(
            Registration.participant_id == current_user.id,
            Registration.status.in_(RegistrationStatus.ACTIVE + (RegistrationStatus.ATTENDED,)),
        )
        .all()
    )
    upcoming = sorted(
        (
            r for r in active
            if r.status in RegistrationStatus.ACTIVE
            and r.event.status in EventStatus.OPEN_FOR_REGISTRATION
            and r.event.start_at and r.event.start_at > now
        ),
        key=lambda r: r.event.start_at,
    )
    preference = db.query(Preference).filter(Preference.participant_id == current_user.id).first()

    return {
        "registered_count": sum(1 for r in active if r.status in RegistrationStatus.ACTIVE),
        "attended_count": sum(1 for r in active if r.status == RegistrationStatus.ATTENDED),
        "upcoming_count": len(upcoming),
        "followed_count": len(preference.followed_organizers) if preference else 0,
        "upcoming_events": [
            {"registration_id": r.id, "status": r.status, "event": EventOut.model_validate(r.event)}
            for r in upcoming[:5]
        ],
    }
