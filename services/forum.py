"""Per-event discussion forum."""
import logging
import math
from typing import List, Optional, Tuple

from config import settings
from errors import ForbiddenError, NotFoundError, ValidationError
from models import (
    Event, EventStatus, Message, MessageReaction, REACTION_EMOJIS, Registration, RegistrationStatus, Role,
)

logger = logging.getLogger(__name__)


def get_forum_event(db, event_id: int) -> Event:
    event = db.query(Event).filter(Event.id == event_id, Event.status != EventStatus.DRAFT).first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def _is_moderator(event, user) -> bool:
    return user.role == Role.ADMIN or event.organizer_id == user.id


def ensure_can_post(db, event, user):
    if _is_moderator(event, user):
        return
    if user.role == Role.PARTICIPANT:
        registered = (
            db.query(Registration)
            .filter(
                Registration.event_id == event.id,
                Registration.participant_id == user.id,
                Registration.status.in_((RegistrationStatus.REGISTERED, RegistrationStatus.ATTENDED)),
            )
            .first()
        )
        if registered:
            return
        raise ForbiddenError("You must be registered for this event to post in the forum")
    raise ForbiddenError("Only the event organizer can post in this forum")


def _get_message(db, event_id: int, message_id: int) -> Message:
    message = (
        db.query(Message)
        .filter(Message.id == message_id, Message.event_id == event_id, Message.is_deleted.is_(False))
        .first()
    )
    if not message:
        raise NotFoundError("Message not found")
    return message


def list_messages(db, event_id: int, page: int = 1, limit: int = 50) -> Tuple[List[Message], int, int]:
    """Pinned first, newest first across pages; each page is returned oldest-first."""
    get_forum_event(db, event_id)
    query = db.query(Message).filter(Message.event_id == event_id, Message.is_deleted.is_(False))
    total = query.count()
    messages = (
        query.order_by(Message.is_pinned.desc(), Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    messages.reverse()
    return messages, total, math.ceil(total / limit) if limit else 0


def post_message(db, event_id: int, user, content: str, parent_id: Optional[int] = None,
                 is_announcement: bool = False) -> Message:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")
    if len(content) > settings.MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message too long (max {settings.MESSAGE_MAX_LENGTH} chars)")

    event = get_forum_event(db, event_id)
    ensure_can_post(db, event, user)

    if parent_id is not None:
        parent = _get_message(db, event.id, parent_id)
        # Replies to replies attach to the thread root
        parent_id = parent.parent_id or parent.id

    message = Message(
        event_id=event.id,
        author_id=user.id,
        content=content,
        parent_id=parent_id,
        is_announcement=bool(is_announcement) and event.organizer_id == user.id,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message {message.id} posted to forum {event.id} by {user.id}")
    return message


def toggle_pin(db, event_id: int, message_id: int, user) -> Message:
    event = get_forum_event(db, event_id)
    if not _is_moderator(event, user):
        raise ForbiddenError("Only the event organizer can pin messages")
    message = _get_message(db, event.id, message_id)
    message.is_pinned = not message.is_pinned
    db.commit()
    db.refresh(message)
    return message


def delete_message(db, event_id: int, message_id: int, user) -> Message:
    event = get_forum_event(db, event_id)
    message = _get_message(db, event.id, message_id)
    if message.author_id != user.id and not _is_moderator(event, user):
        raise ForbiddenError("Not authorized to delete this message")
    message.is_deleted = True
    message.deleted_by = user.id
    db.commit()
    logger.info(f"Message {message.id} deleted from forum {event.id} by {user.id}")
    return message


def toggle_reaction(db, event_id: int, message_id: int, user, emoji: str) -> Message:
    if emoji not in REACTION_EMOJIS:
        raise ValidationError("Invalid emoji")
    get_forum_event(db, event_id)
    message = _get_message(db, event_id, message_id)
    existing = (
        db.query(MessageReaction)
        .filter(
            MessageReaction.message_id == message.id,
            MessageReaction.user_id == user.id,
            MessageReaction.emoji == emoji,
        )
        .first()
    )
    if existing:
        db.delete(existing)
    else:
        db.add(MessageReaction(message_id=message.id, user_id=user.id, emoji=emoji))
    db.commit()
    db.refresh(message)
    return message
