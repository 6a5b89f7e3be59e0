import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from syntax_events.database import Base, UTCDateTime, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


# ── Event ↔ Ticket link (the event's ticket set) ────────────────────────────
event_tickets = Table(
    "event_tickets",
    Base.metadata,
    Column("event_id",  String(32), ForeignKey("events.id", ondelete="CASCADE"),  primary_key=True),
    Column("ticket_id", String(32), ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True),
)


class Event(Base):
    __tablename__ = "events"

    id                    = Column(String(32),  primary_key=True, default=_new_id)
    slug                  = Column(String(160), unique=True, nullable=True)
    title                 = Column(String(150), nullable=False)
    description           = Column(Text,        nullable=False)
    venue                 = Column(String(150), nullable=False)
    organizer             = Column(String(100), nullable=True)
    category              = Column(String(60),  nullable=False)
    tags                  = Column(JSON,        default=list, nullable=False)
    # [{"url": ..., "mediaId": ..., "kind": ...}]
    posters               = Column(JSON,        default=list, nullable=False)
    ticket_price          = Column(Float,       default=0, nullable=False)

    event_date            = Column(UTCDateTime, nullable=False, index=True)
    event_time            = Column(String(5),   nullable=True)   # HH:MM, informational
    registration_open_at  = Column(UTCDateTime, nullable=True)
    registration_close_at = Column(UTCDateTime, nullable=True)

    total_spots           = Column(Integer,     default=0, nullable=False)   # 0 = unlimited
    # internal | external | none
    registration_mode     = Column(String(10),  default="none", nullable=False)
    external_url          = Column(String(500), nullable=True)
    allow_guests          = Column(Boolean,     default=True, nullable=False)
    capacity_override     = Column(Integer,     default=0, nullable=False)   # 0 = inherit total_spots

    # upcoming | ongoing | completed | cancelled | postponed
    status                = Column(String(20),  default="upcoming", nullable=False, index=True)
    # Tickets with status != cancelled; guarded by a conditional UPDATE on registration
    active_ticket_count   = Column(Integer,     default=0, nullable=False)

    created_at            = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at            = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tickets = relationship(
        "Ticket",
        secondary=event_tickets,
        order_by="Ticket.created_at.desc()",
        viewonly=True,
    )

    @property
    def effective_capacity(self) -> int:
        if self.capacity_override and self.capacity_override > 0:
            return self.capacity_override
        return self.total_spots or 0

    @property
    def spots_left(self):
        """Remaining seats, or None when capacity is unlimited."""
        cap = self.effective_capacity
        if cap == 0:
            return None
        return max(0, cap - self.active_ticket_count)

    @property
    def is_full(self) -> bool:
        cap = self.effective_capacity
        return cap > 0 and self.active_ticket_count >= cap


class Ticket(Base):
    __tablename__ = "tickets"

    id             = Column(String(32),  primary_key=True, default=_new_id)
    ticket_code    = Column(String(32),  unique=True, nullable=False, index=True)
    event_id       = Column(String(32),  ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    event_name     = Column(String(150), nullable=False)

    full_name      = Column(String(100), nullable=False)
    email          = Column(String(255), nullable=False)
    phone          = Column(String(20),  nullable=False)
    student_id     = Column(String(32),  nullable=False)
    gender         = Column(String(20),  nullable=False)
    course         = Column(String(100), nullable=False)
    hosteler       = Column(Boolean,     default=False, nullable=False)
    hostel         = Column(String(100), nullable=True)
    # Opaque; passed through, never validated or settled
    payment_details = Column(JSON,       nullable=True)

    # active | used | cancelled
    status         = Column(String(20),  default="active", nullable=False, index=True)
    qr_url         = Column(String(500), nullable=True)
    qr_media_id    = Column(String(255), nullable=True)
    # pending | sent | failed
    email_status   = Column(String(20),  default="pending", nullable=False, index=True)

    created_at     = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    updated_at     = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "email",      name="uq_tickets_event_email"),
        UniqueConstraint("event_id", "student_id", name="uq_tickets_event_student"),
    )

    @property
    def qr(self):
        if not self.qr_url:
            return None
        return {"url": self.qr_url, "mediaId": self.qr_media_id}


# ── Outbox of post-commit side effects ──────────────────────────────────────
class SideEffectJob(Base):
    """One QR render or confirmation email owed to a ticket."""

    __tablename__ = "side_effect_jobs"

    id          = Column(Integer,     primary_key=True, autoincrement=True)
    ticket_id   = Column(String(32),  ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_code = Column(String(32),  nullable=False)
    kind        = Column(String(10),  nullable=False)   # qr | email
    status      = Column(String(10),  default="pending", nullable=False, index=True)   # pending | done | failed
    attempts    = Column(Integer,     default=0, nullable=False)
    last_error  = Column(Text,        nullable=True)
    created_at  = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at  = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("ticket_code", "kind", name="uq_side_effect_jobs_code_kind"),
    )
