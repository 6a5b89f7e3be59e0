"""Ticket store.

Uniqueness lives in the schema (``uq_tickets_event_email``,
``uq_tickets_event_student`` and the unique ``ticket_code``); this module
turns violations into domain errors and owns the status state machine.
None of these functions commit.
"""

import math
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from syntax_events import events, models
from syntax_events.errors import DuplicateAttendeeError, InvalidTransitionError, TicketNotFoundError

ALLOWED_TRANSITIONS = {
    "active":    {"used", "cancelled"},
    "used":      {"cancelled"},
    "cancelled": set(),
}

# First match wins: email, then student id, then ticket code
_CONSTRAINT_FIELDS = (
    ("email",      ("uq_tickets_event_email", "tickets.email")),
    ("studentId",  ("uq_tickets_event_student", "tickets.student_id")),
    ("ticketCode", ("ticket_code",)),
)


class TicketCodeTaken(Exception):
    """The minted code already exists; the caller should mint again."""


def conflicting_field(exc: IntegrityError) -> Optional[str]:
    """Which uniqueness rule ``exc`` violated, or None if it is something else."""
    orig = exc.orig
    diag = getattr(orig, "diag", None)
    text = " ".join(
        part for part in (getattr(diag, "constraint_name", None), str(orig)) if part
    )
    for field, markers in _CONSTRAINT_FIELDS:
        if any(marker in text for marker in markers):
            return field
    return None


def insert_in_transaction(db, ticket: models.Ticket) -> models.Ticket:
    """Flush ``ticket`` inside the caller's transaction.

    Raises DuplicateAttendeeError or TicketCodeTaken on key conflicts. The
    transaction is unusable after either and must be rolled back.
    """
    db.add(ticket)
    try:
        db.flush()
    except IntegrityError as exc:
        field = conflicting_field(exc)
        if field == "ticketCode":
            raise TicketCodeTaken(ticket.ticket_code) from exc
        if field is not None:
            raise DuplicateAttendeeError(field) from exc
        raise
    return ticket


def count_active_for_event(db, event_id: str) -> int:
    return db.execute(
        select(func.count())
        .select_from(models.Ticket)
        .where(models.Ticket.event_id == event_id, models.Ticket.status != "cancelled")
    ).scalar_one()


def find_conflict(db, event_id: str, email: Optional[str], student_id: Optional[str]) -> Optional[str]:
    """Field that already holds a slot for this event, cancelled tickets included."""
    conditions = []
    if email:
        conditions.append(models.Ticket.email == email)
    if student_id:
        conditions.append(models.Ticket.student_id == student_id)
    if not conditions:
        return None

    existing = db.execute(
        select(models.Ticket.email, models.Ticket.student_id)
        .where(models.Ticket.event_id == event_id, or_(*conditions))
        .limit(2)
    ).all()
    if email and any(row.email == email for row in existing):
        return "email"
    if existing:
        return "studentId"
    return None


def find_by_code(db, code: str) -> Optional[models.Ticket]:
    return db.execute(
        select(models.Ticket).where(models.Ticket.ticket_code == code)
    ).scalar_one_or_none()


def find_by_internal_id(db, ticket_id: str) -> Optional[models.Ticket]:
    return db.get(models.Ticket, ticket_id)


def find_by_id_or_code(db, id_or_code: str, for_update: bool = False) -> models.Ticket:
    stmt = select(models.Ticket).where(
        or_(models.Ticket.id == id_or_code, models.Ticket.ticket_code == id_or_code)
    )
    if for_update:
        stmt = stmt.with_for_update()
    ticket = db.execute(stmt).scalars().first()
    if ticket is None:
        raise TicketNotFoundError(id_or_code)
    return ticket


def list_by_event(
    db,
    event_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    email_status: Optional[str] = None,
) -> dict:
    stmt = select(models.Ticket)
    if event_id:
        stmt = stmt.where(models.Ticket.event_id == event_id)
    if status:
        stmt = stmt.where(models.Ticket.status == status)
    if email_status:
        stmt = stmt.where(models.Ticket.email_status == email_status)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    tickets = db.execute(
        stmt.order_by(models.Ticket.created_at.desc(), models.Ticket.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "items": tickets,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def patch_status(db, id_or_code: str, status: str, now: datetime) -> models.Ticket:
    """Move a ticket along active → used → cancelled; nothing returns to active."""
    ticket = find_by_id_or_code(db, id_or_code, for_update=True)
    if status not in ALLOWED_TRANSITIONS.get(ticket.status, set()):
        raise InvalidTransitionError(ticket.status, status)

    if status == "cancelled":
        events.release_seat(db, ticket.event_id)
    ticket.status = status
    ticket.updated_at = now
    return ticket


def attach_qr(db, ticket: models.Ticket, qr: dict) -> None:
    ticket.qr_url = qr["url"]
    ticket.qr_media_id = qr["mediaId"]


def set_email_status(db, ticket: models.Ticket, status: str) -> None:
    ticket.email_status = status


def delete_by_id_or_code(db, id_or_code: str) -> models.Ticket:
    """Remove a ticket, its outbox jobs and its event link; frees its slots."""
    ticket = find_by_id_or_code(db, id_or_code, for_update=True)
    if ticket.status != "cancelled":
        events.release_seat(db, ticket.event_id)
    events.unlink_ticket(db, ticket.event_id, ticket.id)
    db.execute(
        delete(models.SideEffectJob)
        .where(models.SideEffectJob.ticket_id == ticket.id)
        .execution_options(synchronize_session=False)
    )
    db.delete(ticket)
    db.flush()
    return ticket
