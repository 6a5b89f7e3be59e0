import re
from datetime import datetime, timezone
from typing import Any, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

RegistrationMode = Literal["internal", "external", "none"]
EventStatus = Literal["upcoming", "ongoing", "completed", "cancelled", "postponed"]
TicketStatus = Literal["active", "used", "cancelled"]
EmailStatus = Literal["pending", "sent", "failed"]

T = TypeVar("T")


class CamelModel(BaseModel):
    """JSON uses camelCase; Python code uses snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return v
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


def normalise_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("Invalid email address")
    return v


# ── Events ──────────────────────────────────────────────────────────────────

class Poster(CamelModel):
    url: str
    media_id: str
    kind: str = "image"


class RegistrationPolicy(CamelModel):
    mode: RegistrationMode = "none"
    external_url: Optional[str] = None
    allow_guests: bool = True
    capacity_override: int = Field(0, ge=0)


class RegistrationPolicyUpdate(CamelModel):
    """Only supplied fields are merged (PATCH semantics)."""
    mode: Optional[RegistrationMode] = None
    external_url: Optional[str] = None
    allow_guests: Optional[bool] = None
    capacity_override: Optional[int] = Field(None, ge=0)


def _split_tags(v):
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [str(t).strip() for t in v if str(t).strip()]


class EventCreate(CamelModel):
    title: str = Field(..., min_length=3, max_length=150)
    description: str = Field(..., min_length=10, max_length=2000)
    event_date: datetime
    event_time: Optional[str] = None
    venue: str = Field(..., min_length=2, max_length=150)
    organizer: Optional[str] = Field(None, max_length=100)
    category: str = Field(..., min_length=1, max_length=60)
    slug: Optional[str] = Field(None, max_length=160)
    tags: List[str] = []
    total_spots: int = Field(0, ge=0)
    ticket_price: float = Field(0, ge=0)
    registration_open_at: Optional[datetime] = None
    registration_close_at: Optional[datetime] = None
    registration: RegistrationPolicy = Field(default_factory=RegistrationPolicy)
    status: EventStatus = "upcoming"

    @field_validator("title", "description", "venue", "category", "organizer", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("tags", mode="before")
    @classmethod
    def normalise_tags(cls, v):
        return _split_tags(v)

    @field_validator("event_time")
    @classmethod
    def time_must_be_hh_mm(cls, v):
        if v is not None and not TIME_RE.match(v):
            raise ValueError("eventTime must be HH:MM")
        return v

    @field_validator("event_date", "registration_open_at", "registration_close_at")
    @classmethod
    def assume_utc(cls, v):
        return _as_utc(v)


class EventUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=3, max_length=150)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    event_date: Optional[datetime] = None
    event_time: Optional[str] = None
    venue: Optional[str] = Field(None, min_length=2, max_length=150)
    organizer: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=60)
    slug: Optional[str] = Field(None, max_length=160)
    tags: Optional[List[str]] = None
    total_spots: Optional[int] = Field(None, ge=0)
    ticket_price: Optional[float] = Field(None, ge=0)
    registration_open_at: Optional[datetime] = None
    registration_close_at: Optional[datetime] = None
    registration: Optional[RegistrationPolicyUpdate] = None
    status: Optional[EventStatus] = None

    @field_validator("title", "description", "venue", "category", "organizer", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("tags", mode="before")
    @classmethod
    def normalise_tags(cls, v):
        return None if v is None else _split_tags(v)

    @field_validator("event_time")
    @classmethod
    def time_must_be_hh_mm(cls, v):
        if v is not None and not TIME_RE.match(v):
            raise ValueError("eventTime must be HH:MM")
        return v

    @field_validator("event_date", "registration_open_at", "registration_close_at")
    @classmethod
    def assume_utc(cls, v):
        return _as_utc(v)


class EventOut(CamelModel):
    id: str
    slug: Optional[str] = None
    title: str
    description: str
    event_date: datetime
    event_time: Optional[str] = None
    venue: str
    organizer: Optional[str] = None
    category: str
    tags: List[str] = []
    posters: List[Poster] = []
    ticket_price: float
    total_spots: int
    registration_open_at: Optional[datetime] = None
    registration_close_at: Optional[datetime] = None
    registration: RegistrationPolicy
    status: EventStatus
    effective_capacity: int
    spots_left: Optional[int] = None
    is_full: bool
    ticket_count: int
    registration_status: str
    created_at: datetime
    updated_at: datetime


class EventSummary(CamelModel):
    id: str
    title: str
    event_date: datetime
    event_time: Optional[str] = None
    venue: str
    category: str
    status: EventStatus
    ticket_price: float
    posters: List[Poster] = []
    ticket_count: int
    registration: RegistrationPolicy
    registration_status: str


class PublicEventOut(CamelModel):
    id: str
    title: str
    description: str
    event_date: datetime
    event_time: Optional[str] = None
    venue: str
    category: str
    posters: List[Poster] = []
    tags: List[str] = []
    ticket_price: float
    registration_status: str
    registration_mode: RegistrationMode
    external_url: Optional[str] = None
    spots_left: Optional[int] = None
    ticket_count: int
    status: EventStatus


class EventStats(CamelModel):
    total_events: int
    with_tickets: int
    status_counts: dict


# ── Tickets ─────────────────────────────────────────────────────────────────

class RegistrationRequest(CamelModel):
    event_id: Optional[str] = None
    full_name: str = Field(..., max_length=100)
    email: str
    phone: str = Field(..., max_length=20)
    student_id: str = Field(..., max_length=32)
    gender: str = Field(..., max_length=20)
    course: str = Field(..., max_length=100)
    hosteler: bool = False
    hostel: Optional[str] = Field(None, max_length=100)
    payment_details: Optional[Any] = None

    @field_validator("full_name", "phone", "student_id", "gender", "course")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("email")
    @classmethod
    def email_must_be_valid(cls, v: str) -> str:
        return normalise_email(v)

    @model_validator(mode="after")
    def hostel_required_for_hostelers(self):
        if self.hosteler:
            if not self.hostel or not self.hostel.strip():
                raise ValueError("hostel is required for hostelers")
            self.hostel = self.hostel.strip()
        else:
            self.hostel = None
        return self


class QrInfo(CamelModel):
    url: str
    media_id: Optional[str] = None


class TicketOut(CamelModel):
    id: str
    ticket_code: str
    event_id: str
    event_name: str
    full_name: str
    email: str
    phone: str
    student_id: str
    gender: str
    course: str
    hosteler: bool
    hostel: Optional[str] = None
    status: TicketStatus
    qr: Optional[QrInfo] = None
    email_status: EmailStatus
    created_at: datetime
    updated_at: datetime


class RegistrationOut(CamelModel):
    message: str
    ticket: TicketOut


class TicketStatusUpdate(CamelModel):
    status: TicketStatus


class AvailabilityRequest(CamelModel):
    event_id: str
    email: Optional[str] = None
    student_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def email_must_be_valid(cls, v):
        return None if v is None or not v.strip() else normalise_email(v)

    @field_validator("student_id")
    @classmethod
    def strip_student_id(cls, v):
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def one_key_required(self):
        if not self.email and not self.student_id:
            raise ValueError("Either email or studentId is required.")
        return self


class AvailabilityOut(CamelModel):
    available: bool


class Page(CamelModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    pages: int


class EventPage(Page[EventSummary]):
    pass


class TicketPage(Page[TicketOut]):
    pass

