from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Table, Text,
    UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from database import Base


class Role:
    PARTICIPANT = "participant"
    ORGANIZER = "organizer"
    ADMIN = "admin"


class EventType:
    NORMAL = "normal"
    MERCHANDISE = "merchandise"


class EventStatus:
    DRAFT = "draft"
    PUBLISHED = "published"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, CANCELLED)
    OPEN_FOR_REGISTRATION = (PUBLISHED, ONGOING)


class RegistrationStatus:
    PENDING = "pending"
    REGISTERED = "registered"
    ATTENDED = "attended"
    CANCELLED = "cancelled"

    ACTIVE = (REGISTERED, PENDING)


class PaymentStatus:
    NOT_REQUIRED = "not_required"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class AttendanceMethod:
    QR_SCAN = "qr_scan"
    MANUAL = "manual"


REACTION_EMOJIS = ("👍", "❤️", "🎉", "😂", "🤔", "👏")


preference_follows = Table(
    "preference_follows",
    Base.metadata,
    Column("preference_id", Integer, ForeignKey("preferences.id", ondelete="CASCADE"), primary_key=True),
    Column("organizer_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    role = Column(String(20), nullable=False)  # participant | organizer | admin
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)

    # Participant
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(30))
    participant_type = Column(String(20))  # IIIT | Non-IIIT, fixed at sign-up
    college_name = Column(String(255))

    # Organizer
    organizer_name = Column(String(255))
    category = Column(String(100))
    description = Column(Text)
    contact_email = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    webhook_url = Column(String(500))
    notify_on_registration = Column(Boolean, default=True, nullable=False)
    notify_on_cancellation = Column(Boolean, default=True, nullable=False)
    notify_on_event_start = Column(Boolean, default=True, nullable=False)
    password_reset_requested = Column(Boolean, default=False, nullable=False)
    password_reset_requested_at = Column(DateTime)

    # Admin
    admin_name = Column(String(255))
    privileges = Column(String(50))

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    events = relationship("Event", back_populates="organizer", cascade="all, delete-orphan")
    followers = relationship("Preference", secondary=preference_follows, back_populates="followed_organizers")

    @property
    def display_name(self) -> str:
        if self.first_name:
            return f"{self.first_name} {self.last_name or ''}".strip()
        return self.organizer_name or self.admin_name or self.email


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    organizer_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    event_type = Column(String(20), nullable=False, default=EventType.NORMAL)
    category = Column(String(100), default="General")
    eligibility = Column(String(20), default="all")  # all | iiit | non-iiit
    tags = Column(JSON, default=list)
    venue = Column(String(255), default="")
    image_url = Column(String(500))
    registration_fee = Column(Float, default=0)
    registration_limit = Column(Integer)  # None means unlimited
    start_at = Column(DateTime)
    end_at = Column(DateTime)
    registration_deadline = Column(DateTime)
    status = Column(String(20), nullable=False, default=EventStatus.DRAFT, index=True)
    custom_form_fields = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organizer = relationship("Account", back_populates="events")
    items = relationship(
        "MerchandiseItem",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="MerchandiseItem.position",
    )
    registrations = relationship("Registration", back_populates="event", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="event", cascade="all, delete-orphan")


class MerchandiseItem(Base):
    __tablename__ = "merchandise_items"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    variant = Column(String(100))
    price = Column(Float, default=0, nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    purchase_limit = Column(Integer, default=1, nullable=False)
    position = Column(Integer, default=0, nullable=False)

    event = relationship("Event", back_populates="items")


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        # At most one active registration per (participant, event)
        Index(
            "uq_active_registration",
            "participant_id",
            "event_id",
            unique=True,
            sqlite_where=text("status IN ('registered', 'pending')"),
            postgresql_where=text("status IN ('registered', 'pending')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=RegistrationStatus.REGISTERED)
    form_responses = Column(JSON, default=dict)

    # Merchandise order
    merchandise_item_id = Column(Integer, ForeignKey("merchandise_items.id", ondelete="SET NULL"))
    quantity = Column(Integer, default=1, nullable=False)
    payment_amount = Column(Float, default=0, nullable=False)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NOT_REQUIRED)
    payment_proof_path = Column(String(500))
    payment_reviewed_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"))
    payment_reviewed_at = Column(DateTime)
    payment_rejection_reason = Column(Text)

    # Ticket, issued once the registration is `registered`
    ticket_id = Column(String(64), unique=True, index=True)
    ticket_payload = Column(Text)
    ticket_issued_at = Column(DateTime)

    # Attendance, set at most once
    attended_at = Column(DateTime)
    attendance_method = Column(String(20))
    marked_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"))

    registered_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    event = relationship("Event", back_populates="registrations")
    participant = relationship("Account", foreign_keys=[participant_id])
    item = relationship("MerchandiseItem")

    @property
    def is_active(self) -> bool:
        return self.status in RegistrationStatus.ACTIVE


class Preference(Base):
    __tablename__ = "preferences"

    id = Column(Integer, primary_key=True, index=True)
    participant_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False)
    interests = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    followed_organizers = relationship("Account", secondary=preference_follows, back_populates="followers")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    parent_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL"))
    is_pinned = Column(Boolean, default=False, nullable=False)
    is_announcement = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_by = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    event = relationship("Event", back_populates="messages")
    author = relationship("Account", foreign_keys=[author_id])
    reactions = relationship("MessageReaction", back_populates="message", cascade="all, delete-orphan")


class MessageReaction(Base):
    __tablename__ = "message_reactions"
    __table_args__ = (UniqueConstraint("message_id", "user_id", "emoji", name="uq_reaction"),)

    id = Column(Integer, primary_key=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    emoji = Column(String(16), nullable=False)

    message = relationship("Message", back_populates="reactions")
