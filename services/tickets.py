"""QR tickets.

The payload is a compact JSON object the scanner hands back unchanged:
{"event_id": .., "participant_id": .., "ticket_id": .., "timestamp": ..}
"""
import io
import json
import logging
import uuid
from datetime import datetime
from typing import Optional

import qrcode

from errors import ValidationError

logger = logging.getLogger(__name__)


def issue_ticket(registration, now: Optional[datetime] = None) -> str:
    """Attach a ticket to a registration that has just become `registered`. Caller commits."""
    now = now or datetime.utcnow()
    ticket_id = f"TKT-{uuid.uuid4().hex[:12].upper()}"
    registration.ticket_id = ticket_id
    registration.ticket_payload = json.dumps({
        "event_id": registration.event_id,
        "participant_id": registration.participant_id,
        "ticket_id": ticket_id,
        "timestamp": now.isoformat(),
    }, separators=(",", ":"))
    registration.ticket_issued_at = now
    return registration.ticket_payload


def parse_ticket(qr_data: str) -> dict:
    try:
        data = json.loads(qr_data)
    except (TypeError, ValueError):
        raise ValidationError("Invalid QR code data")
    if not isinstance(data, dict) or not data.get("ticket_id") or not isinstance(data.get("event_id"), int):
        raise ValidationError("Invalid QR code data")
    return data


def render_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
