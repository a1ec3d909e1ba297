from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ValidationError as SchemaError
from sqlalchemy.orm import Session
from typing import Optional, Type
import json
import logging

from database import get_db
from errors import AppError, ValidationError
from models import Account
from schemas import MessageCreate, MessageOut, MessagePage, ReactionFrame, ReactionToggle
from dependencies import get_current_user, resolve_token
from services import forum
from websocket_manager import forum_room, manager

logger = logging.getLogger(__name__)

router = APIRouter()


def message_json(message) -> dict:
    return MessageOut.model_validate(message).model_dump(mode="json")


def reactions_json(message) -> dict:
    return {
        "message_id": message.id,
        "reactions": [{"user_id": r.user_id, "emoji": r.emoji} for r in message.reactions],
    }


@router.get("/{event_id}/messages", response_model=MessagePage)
async def list_messages(
    event_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    messages, total, pages = forum.list_messages(db, event_id, page, limit)
    return {"messages": messages, "total": total, "page": page, "pages": pages}


@router.post("/{event_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def post_message(
    event_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    message = forum.post_message(
        db, event_id, current_user, payload.content, payload.parent_id, payload.is_announcement
    )
    await manager.broadcast(forum_room(event_id), {"type": "new_message", "message": message_json(message)})
    return message


@router.patch("/{event_id}/messages/{message_id}/pin", response_model=MessageOut)
async def toggle_pin(
    event_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    message = forum.toggle_pin(db, event_id, message_id, current_user)
    await manager.broadcast(forum_room(event_id), {
        "type": "message_pinned",
        "message_id": message.id,
        "is_pinned": message.is_pinned,
    })
    return message


@router.delete("/{event_id}/messages/{message_id}")
async def delete_message(
    event_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    message = forum.delete_message(db, event_id, message_id, current_user)
    await manager.broadcast(forum_room(event_id), {"type": "message_deleted", "message_id": message.id})
    return {"message": "Message deleted"}


@router.post("/{event_id}/messages/{message_id}/reactions", response_model=MessageOut)
async def toggle_reaction(
    event_id: int,
    message_id: int,
    payload: ReactionToggle,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    message = forum.toggle_reaction(db, event_id, message_id, current_user, payload.emoji)
    await manager.broadcast(forum_room(event_id), {"type": "reaction_updated", **reactions_json(message)})
    return message


def _frame_event_id(data: dict) -> int:
    try:
        return int(data.get("event_id"))
    except (TypeError, ValueError):
        raise ValidationError("event_id is required")


def _parse_frame(model: Type[BaseModel], data: dict):
    try:
        return model.model_validate(data)
    except SchemaError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "frame"
        raise ValidationError(f"Invalid {field}: {error['msg']}")


async def handle_frame(websocket: WebSocket, data: dict, user: Account, db: Session):
    """Apply one client frame. Writes are mirrored to the forum room."""
    frame_type = data.get("type")

    if frame_type == "ping":
        await websocket.send_json({"type": "pong"})
        return

    event_id = _frame_event_id(data)
    room = forum_room(event_id)

    if frame_type == "join":
        forum.get_forum_event(db, event_id)
        await manager.join(room, websocket)
        await websocket.send_json({"type": "joined", "event_id": event_id})
        logger.info(f"User {user.id} joined {room}")
    elif frame_type == "leave":
        await manager.leave(room, websocket)
        await websocket.send_json({"type": "left", "event_id": event_id})
    elif frame_type == "send_message":
        payload = _parse_frame(MessageCreate, data)
        message = forum.post_message(db, event_id, user, payload.content, payload.parent_id, payload.is_announcement)
        await manager.broadcast(room, {"type": "new_message", "message": message_json(message)})
    elif frame_type == "toggle_reaction":
        payload = _parse_frame(ReactionFrame, data)
        message = forum.toggle_reaction(db, event_id, payload.message_id, user, payload.emoji)
        await manager.broadcast(room, {"type": "reaction_updated", **reactions_json(message)})
    else:
        raise ValidationError(f"Unknown message type: {frame_type}")


@router.websocket("/ws")
async def forum_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Real-time forum channel

    Args:
        websocket: The WebSocket connection
        token: JWT token for authentication (required)
    """
    try:
        user = resolve_token(token, db)
    except AppError as e:
        logger.info(f"Rejected forum socket: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket)
    await websocket.send_json({"type": "connection", "status": "connected", "user_id": user.id})
    try:
        while True:
            text = await websocket.receive_text()
            try:
                data = json.loads(text)
            except ValueError:
                await websocket.send_json({"type": "error", "detail": "Frames must be valid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "detail": "Frames must be JSON objects"})
                continue
            try:
                await handle_frame(websocket, data, user, db)
            except AppError as e:
                db.rollback()
                await websocket.send_json({"type": "error", "detail": e.message})
            except WebSocketDisconnect:
                raise
            except Exception:
                db.rollback()
                logger.exception(f"Unhandled error in forum frame from user {user.id}")
                await websocket.send_json({"type": "error", "detail": "Internal server error"})
    except WebSocketDisconnect:
        logger.info(f"User {user.id} disconnected from forum socket")
    finally:
        await manager.disconnect(websocket)
