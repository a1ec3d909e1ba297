from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Literal, Optional
from datetime import datetime
import logging

from database import get_db
from models import Account, RegistrationStatus, Role
from schemas import EventDetail, EventListItem, EventOut, EventPage, OrganizerPublic, to_naive_utc
from dependencies import get_optional_user
from services import events as event_service
from services.registrations import count_confirmed

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=EventPage)
async def list_events(
    search: Optional[str] = None,
    category: Optional[str] = None,
    event_type: Optional[Literal["normal", "merchandise"]] = None,
    organizer_id: Optional[int] = None,
    start_from: Optional[datetime] = None,
    start_to: Optional[datetime] = None,
    sort_by: Literal["start_at", "name", "created_at"] = "start_at",
    sort_order: Literal["asc", "desc"] = "asc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: Optional[Account] = Depends(get_optional_user)
):
    """
    Browse published and ongoing events.
    - search: matches name, description and tags; falls back to fuzzy matching
    - participants see events from followed clubs and matching interests first
    """
    events, total, statuses = event_service.list_public_events(
        db,
        user=current_user,
        search=search,
        category=category,
        event_type=event_type,
        organizer_id=organizer_id,
        start_from=to_naive_utc(start_from),
        start_to=to_naive_utc(start_to),
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    data = []
    for event in events:
        item = EventListItem.model_validate(event)
        item.registration_status = statuses.get(event.id)
        data.append(item)
    return {
        "data": data,
        "page": page,
        "limit": limit,
        "total": total,
        "pages": event_service.page_count(total, limit),
    }


@router.get("/trending", response_model=List[EventListItem])
async def trending(db: Session = Depends(get_db)):
    """Top events by registrations in the last 24 hours"""
    result = []
    for event, recent in event_service.trending_events(db):
        item = EventListItem.model_validate(event)
        item.recent_registrations = recent
        result.append(item)
    return result


@router.get("/categories", response_model=List[str])
async def categories(db: Session = Depends(get_db)):
    return event_service.categories(db)


@router.get("/organizers", response_model=List[OrganizerPublic])
async def organizers(db: Session = Depends(get_db)):
    return event_service.active_organizers(db)


@router.get("/organizers/{organizer_id}")
async def organizer_detail(organizer_id: int, db: Session = Depends(get_db)):
    organizer, upcoming, past = event_service.organizer_with_events(db, organizer_id)
    return {
        "organizer": OrganizerPublic.model_validate(organizer),
        "events": [EventOut.model_validate(e) for e in upcoming],
        "past_events": [EventOut.model_validate(e) for e in past],
    }


@router.get("/{event_id}", response_model=EventDetail)
async def event_detail(
    event_id: int,
    db: Session = Depends(get_db),
    current_user: Optional[Account] = Depends(get_optional_user)
):
    event = event_service.public_event(db, event_id)
    detail = EventDetail.model_validate(event)
    detail.registration_count = count_confirmed(db, event.id)
    if event.registration_limit is not None:
        detail.spots_remaining = max(event.registration_limit - detail.registration_count, 0)

    if current_user is not None and current_user.role == Role.PARTICIPANT:
        registration = event_service.latest_registration(db, event.id, current_user.id)
        if registration is not None:
            detail.registration_id = registration.id
            detail.registration_status = registration.status
            detail.payment_status = registration.payment_status
            detail.payment_rejection_reason = registration.payment_rejection_reason
            if registration.status in (RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED):
                detail.ticket_payload = registration.ticket_payload
    return detail
