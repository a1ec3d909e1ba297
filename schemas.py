from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from services.lifecycle import derive_status


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Account schemas
class AccountOut(BaseModel):
    id: int
    role: str
    email: str
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    participant_type: Optional[str] = None
    college_name: Optional[str] = None
    organizer_name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None
    is_active: bool = True
    webhook_url: Optional[str] = None
    notify_on_registration: bool = True
    notify_on_cancellation: bool = True
    notify_on_event_start: bool = True
    password_reset_requested: bool = False
    password_reset_requested_at: Optional[datetime] = None
    admin_name: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrganizerPublic(BaseModel):
    id: int
    organizer_name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None

    model_config = {"from_attributes": True}


class AuthorOut(BaseModel):
    id: int
    role: str
    display_name: str
    participant_type: Optional[str] = None

    model_config = {"from_attributes": True}


# Authentication schemas
class CaptchaOut(BaseModel):
    captcha_id: str
    question: str


class UserSignup(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str
    last_name: str
    phone: Optional[str] = None
    college_name: Optional[str] = None
    captcha_id: Optional[str] = None
    captcha_answer: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


class UserLogin(BaseModel):
    email: EmailStr
    password: str
    captcha_id: Optional[str] = None
    captcha_answer: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str
    user: AccountOut


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


# Participant schemas
class ParticipantProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    college_name: Optional[str] = None


class PreferenceUpdate(BaseModel):
    interests: List[str] = []


class PreferenceOut(BaseModel):
    interests: List[str] = []
    followed_organizers: List[OrganizerPublic] = []

    model_config = {"from_attributes": True}


# Event schemas
class FormField(BaseModel):
    label: str
    type: Literal["text", "textarea", "select", "checkbox", "number", "email", "phone", "file"] = "text"
    required: bool = False
    options: List[str] = []
    placeholder: Optional[str] = None


class MerchandiseItemIn(BaseModel):
    name: str
    variant: Optional[str] = None
    price: float = Field(default=0, ge=0)
    stock: int = Field(default=0, ge=0)
    purchase_limit: int = Field(default=1, ge=1)


class MerchandiseItemOut(MerchandiseItemIn):
    id: int

    model_config = {"from_attributes": True}


class EventBase(BaseModel):
    description: Optional[str] = None
    category: Optional[str] = None
    eligibility: Optional[Literal["all", "iiit", "non-iiit"]] = None
    tags: Optional[List[str]] = None
    venue: Optional[str] = None
    image_url: Optional[str] = None
    registration_fee: Optional[float] = Field(default=None, ge=0)
    registration_limit: Optional[int] = Field(default=None, ge=1)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    custom_form_fields: Optional[List[FormField]] = None
    merchandise_items: Optional[List[MerchandiseItemIn]] = None

    @field_validator("start_at", "end_at", "registration_deadline")
    @classmethod
    def normalize_timestamp(cls, v):
        return to_naive_utc(v)


class EventCreate(EventBase):
    name: str
    event_type: Literal["normal", "merchandise"] = "normal"

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Event name is required")
        return v.strip()


class EventUpdate(EventBase):
    """All fields optional; only supplied fields are applied."""
    name: Optional[str] = None
    event_type: Optional[Literal["normal", "merchandise"]] = None


class EventOut(BaseModel):
    id: int
    organizer_id: int
    name: str
    description: Optional[str] = None
    event_type: str
    category: Optional[str] = None
    eligibility: Optional[str] = None
    tags: List[str] = []
    venue: Optional[str] = None
    image_url: Optional[str] = None
    registration_fee: Optional[float] = None
    registration_limit: Optional[int] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    status: str
    effective_status: Optional[str] = None
    custom_form_fields: List[FormField] = []
    items: List[MerchandiseItemOut] = []
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("tags", "custom_form_fields", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return v or []

    @model_validator(mode="after")
    def compute_effective_status(self):
        self.effective_status = derive_status(self.status, self.start_at, self.end_at)
        return self


class EventListItem(EventOut):
    organizer: Optional[OrganizerPublic] = None
    registration_status: Optional[str] = None
    recent_registrations: Optional[int] = None


class EventDetail(EventListItem):
    registration_count: int = 0
    spots_remaining: Optional[int] = None
    registration_id: Optional[int] = None
    payment_status: Optional[str] = None
    payment_rejection_reason: Optional[str] = None
    ticket_payload: Optional[str] = None


class EventPage(BaseModel):
    data: List[EventListItem]
    page: int
    limit: int
    total: int
    pages: int


# Registration schemas
class RegistrationCreate(BaseModel):
    merchandise_item_id: Optional[int] = None
    quantity: int = Field(default=1, ge=1)
    form_responses: Dict[str, Any] = {}


class RegistrationOut(BaseModel):
    id: int
    event_id: int
    participant_id: int
    status: str
    form_responses: Optional[Dict[str, Any]] = None
    merchandise_item_id: Optional[int] = None
    quantity: int
    payment_amount: float
    payment_status: str
    payment_proof_path: Optional[str] = None
    payment_reviewed_at: Optional[datetime] = None
    payment_rejection_reason: Optional[str] = None
    ticket_id: Optional[str] = None
    ticket_payload: Optional[str] = None
    ticket_issued_at: Optional[datetime] = None
    attended_at: Optional[datetime] = None
    attendance_method: Optional[str] = None
    registered_at: datetime

    model_config = {"from_attributes": True}


class ParticipantRegistration(RegistrationOut):
    event: EventOut


class RegistrationWithParticipant(RegistrationOut):
    participant: AccountOut


class RegistrationStatusUpdate(BaseModel):
    status: Literal["cancelled", "attended"]


class PaymentReject(BaseModel):
    reason: Optional[str] = None


class ScanRequest(BaseModel):
    qr_data: str


class ScanResult(BaseModel):
    duplicate: bool
    message: str
    attended_at: Optional[datetime] = None
    registration: RegistrationWithParticipant


# Organizer schemas
class OrganizerProfileUpdate(BaseModel):
    organizer_name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[EmailStr] = None


class WebhookSettings(BaseModel):
    webhook_url: Optional[str] = None
    notify_on_registration: bool = True
    notify_on_cancellation: bool = True
    notify_on_event_start: bool = True


class WebhookTest(BaseModel):
    webhook_url: str


# Admin schemas
class OrganizerCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    organizer_name: str
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[EmailStr] = None


class OrganizerUpdate(OrganizerProfileUpdate):
    pass


class OrganizerStatusUpdate(BaseModel):
    is_active: Optional[bool] = None  # None toggles


class PasswordReset(BaseModel):
    new_password: str = Field(min_length=6)


class AdminInit(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    admin_name: Optional[str] = None


# Forum schemas
class MessageCreate(BaseModel):
    content: str
    parent_id: Optional[int] = None
    is_announcement: bool = False


class ReactionToggle(BaseModel):
    emoji: str


class ReactionFrame(ReactionToggle):
    message_id: int


class ReactionOut(BaseModel):
    user_id: int
    emoji: str

    model_config = {"from_attributes": True}


class MessageOut(BaseModel):
    id: int
    event_id: int
    author: AuthorOut
    content: str
    parent_id: Optional[int] = None
    is_pinned: bool
    is_announcement: bool
    created_at: datetime
    reactions: List[ReactionOut] = []

    model_config = {"from_attributes": True}


class MessagePage(BaseModel):
    messages: List[MessageOut]
    total: int
    page: int
    pages: int


# Attendance schemas
class AttendanceStats(BaseModel):
    total: int
    attended: int
    not_attended: int
    attendance_rate: int
    by_method: Dict[str, int]
    recent_check_ins: List[RegistrationWithParticipant]
    registrations: List[RegistrationWithParticipant]
