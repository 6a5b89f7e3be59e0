"""Event registry: event records, their registration policy, and the ticket set.

Functions here take the request's SQLAlchemy session. Admin writes commit
their own unit of work; the helpers used by the registrar (``load``,
``reserve_seat``, ``link_ticket`` ...) never commit.
"""

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from sqlalchemy import case, delete, func, or_, select, update

from syntax_events import models
from syntax_events.errors import (
    BadRequestError,
    EventNotFoundError,
    ModeLockedError,
    NotFoundError,
)
from syntax_events.media import MediaGateway

logger = logging.getLogger(__name__)

CREATION_GRACE = timedelta(seconds=60)
POSTER_FOLDER = "events/posters"
POSTER_CONTENT_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
SORTABLE_FIELDS = {
    "eventDate": models.Event.event_date,
    "createdAt": models.Event.created_at,
    "title":     models.Event.title,
}


class RegistrationStatus(str, Enum):
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"
    OPEN_EXTERNAL = "OPEN_EXTERNAL"
    FULL = "FULL"
    PAST = "PAST"
    COMING_SOON = "COMING_SOON"
    OPEN_INTERNAL = "OPEN_INTERNAL"

    @property
    def reason(self) -> str:
        """Lower-case form carried by RegistrationNotOpenError."""
        return self.value.lower()


def evaluate_registration(event: models.Event, now: datetime) -> RegistrationStatus:
    """Registration availability; the first matching rule wins."""
    if event.status == "cancelled":
        return RegistrationStatus.CANCELLED
    if event.registration_mode == "none":
        return RegistrationStatus.CLOSED
    if event.registration_mode == "external":
        if event.external_url:
            return RegistrationStatus.OPEN_EXTERNAL
        return RegistrationStatus.CLOSED
    if event.status in ("completed", "ongoing"):
        return RegistrationStatus.CLOSED
    if event.is_full:
        return RegistrationStatus.FULL

    open_at, close_at = event.registration_open_at, event.registration_close_at
    if open_at is None or close_at is None:
        return RegistrationStatus.CLOSED if event.status == "upcoming" else RegistrationStatus.PAST
    if now < open_at:
        return RegistrationStatus.COMING_SOON
    if now <= close_at:
        return RegistrationStatus.OPEN_INTERNAL
    return RegistrationStatus.CLOSED


def is_valid_external_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _validate_policy(event: models.Event) -> None:
    if event.registration_mode == "external" and not is_valid_external_url(event.external_url):
        raise BadRequestError(
            'registration.externalUrl must be a valid absolute URL when registration.mode is "external".'
        )
    if (
        event.registration_open_at
        and event.registration_close_at
        and event.registration_open_at > event.registration_close_at
    ):
        raise BadRequestError("Registration open date cannot be after the close date.")


# ── Reads & ticket-set helpers (no commit) ──────────────────────────────────

def load(db, event_id: str, for_update: bool = False) -> models.Event:
    stmt = select(models.Event).where(models.Event.id == event_id)
    if for_update:
        stmt = stmt.with_for_update()
    event = db.execute(stmt).scalar_one_or_none()
    if event is None:
        raise EventNotFoundError(event_id)
    return event


def ticket_counts(db, event_ids: Iterable[str]) -> Dict[str, int]:
    ids = list(event_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(models.event_tickets.c.event_id, func.count())
        .where(models.event_tickets.c.event_id.in_(ids))
        .group_by(models.event_tickets.c.event_id)
    ).all()
    counts = {event_id: 0 for event_id in ids}
    counts.update({event_id: n for event_id, n in rows})
    return counts


def linked_ticket_count(db, event_id: str) -> int:
    return ticket_counts(db, [event_id])[event_id]


def link_ticket(db, event_id: str, ticket_id: str) -> None:
    """Add ``ticket_id`` to the event's ticket set; a repeat link is a no-op."""
    exists = db.execute(
        select(models.event_tickets.c.ticket_id).where(
            models.event_tickets.c.event_id == event_id,
            models.event_tickets.c.ticket_id == ticket_id,
        )
    ).first()
    if exists is None:
        db.execute(models.event_tickets.insert().values(event_id=event_id, ticket_id=ticket_id))


def unlink_ticket(db, event_id: str, ticket_id: str) -> None:
    db.execute(
        delete(models.event_tickets).where(
            models.event_tickets.c.event_id == event_id,
            models.event_tickets.c.ticket_id == ticket_id,
        )
    )


def _effective_capacity_sql():
    return case(
        (models.Event.capacity_override > 0, models.Event.capacity_override),
        else_=models.Event.total_spots,
    )


def reserve_seat(db, event_id: str) -> bool:
    """Take one seat if the event has room; False means the event is full.

    A single conditional UPDATE, so two registrations racing for the last
    seat cannot both see room.
    """
    capacity = _effective_capacity_sql()
    result = db.execute(
        update(models.Event)
        .where(
            models.Event.id == event_id,
            or_(capacity == 0, models.Event.active_ticket_count < capacity),
        )
        .values(active_ticket_count=models.Event.active_ticket_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_seat(db, event_id: str) -> None:
    db.execute(
        update(models.Event)
        .where(models.Event.id == event_id, models.Event.active_ticket_count > 0)
        .values(active_ticket_count=models.Event.active_ticket_count - 1)
        .execution_options(synchronize_session=False)
    )


# ── Serialisation ───────────────────────────────────────────────────────────

def _registration_dict(event: models.Event) -> dict:
    return {
        "mode": event.registration_mode,
        "external_url": event.external_url,
        "allow_guests": event.allow_guests,
        "capacity_override": event.capacity_override,
    }


def to_detail(event: models.Event, now: datetime, ticket_count: int) -> dict:
    return {
        "id": event.id,
        "slug": event.slug,
        "title": event.title,
        "description": event.description,
        "event_date": event.event_date,
        "event_time": event.event_time,
        "venue": event.venue,
        "organizer": event.organizer,
        "category": event.category,
        "tags": event.tags or [],
        "posters": event.posters or [],
        "ticket_price": event.ticket_price,
        "total_spots": event.total_spots,
        "registration_open_at": event.registration_open_at,
        "registration_close_at": event.registration_close_at,
        "registration": _registration_dict(event),
        "status": event.status,
        "effective_capacity": event.effective_capacity,
        "spots_left": event.spots_left,
        "is_full": event.is_full,
        "ticket_count": ticket_count,
        "registration_status": evaluate_registration(event, now).value,
        "created_at": event.created_at,
        "updated_at": event.updated_at,
    }


def to_summary(event: models.Event, now: datetime, ticket_count: int) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "event_date": event.event_date,
        "event_time": event.event_time,
        "venue": event.venue,
        "category": event.category,
        "status": event.status,
        "ticket_price": event.ticket_price,
        "posters": (event.posters or [])[:1],
        "ticket_count": ticket_count,
        "registration": _registration_dict(event),
        "registration_status": evaluate_registration(event, now).value,
    }


def to_public(event: models.Event, now: datetime, ticket_count: int) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "event_date": event.event_date,
        "event_time": event.event_time,
        "venue": event.venue,
        "category": event.category,
        "posters": event.posters or [],
        "tags": event.tags or [],
        "ticket_price": event.ticket_price,
        "registration_status": evaluate_registration(event, now).value,
        "registration_mode": event.registration_mode,
        "external_url": event.external_url if event.registration_mode == "external" else None,
        "spots_left": event.spots_left,
        "ticket_count": ticket_count,
        "status": event.status,
    }


# ── Listing ─────────────────────────────────────────────────────────────────

def list_events(
    db,
    now: datetime,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    period: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "eventDate",
    sort_order: str = "asc",
) -> dict:
    stmt = select(models.Event)
    if status:
        stmt = stmt.where(models.Event.status == status)
    if period == "upcoming":
        stmt = stmt.where(models.Event.event_date >= now)
    elif period == "past":
        stmt = stmt.where(models.Event.event_date < now)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                models.Event.title.ilike(pattern),
                models.Event.description.ilike(pattern),
                models.Event.category.ilike(pattern),
            )
        )

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    column = SORTABLE_FIELDS.get(sort_by)
    if column is None:
        raise BadRequestError(f"Cannot sort by {sort_by!r}", {"allowed": sorted(SORTABLE_FIELDS)})
    ordering = column.asc() if sort_order == "asc" else column.desc()
    stmt = stmt.order_by(ordering, models.Event.id.asc()).offset((page - 1) * limit).limit(limit)

    events = db.execute(stmt).scalars().all()
    counts = ticket_counts(db, [e.id for e in events])
    return {
        "items": [to_summary(e, now, counts[e.id]) for e in events],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def list_registrations(db, event_id: str) -> List[models.Ticket]:
    return list(load(db, event_id).tickets)


def statistics(db) -> dict:
    by_status = db.execute(
        select(models.Event.status, func.count()).group_by(models.Event.status)
    ).all()
    with_tickets = db.execute(
        select(func.count(func.distinct(models.event_tickets.c.event_id)))
    ).scalar_one()
    status_counts = {status: n for status, n in by_status}
    return {
        "total_events": sum(status_counts.values()),
        "with_tickets": with_tickets,
        "status_counts": status_counts,
    }


# ── Admin writes (commit their own unit of work) ────────────────────────────

def _check_slug_free(db, slug: Optional[str], own_id: Optional[str] = None) -> None:
    if not slug:
        return
    existing = db.execute(
        select(models.Event.id).where(models.Event.slug == slug)
    ).scalar_one_or_none()
    if existing is not None and existing != own_id:
        raise BadRequestError("Slug is already in use by another event.")


def create_event(db, payload, now: datetime) -> models.Event:
    if payload.event_date < now - CREATION_GRACE:
        raise BadRequestError("Event date cannot be in the past.")
    _check_slug_free(db, payload.slug)

    reg = payload.registration
    event = models.Event(
        slug=payload.slug,
        title=payload.title,
        description=payload.description,
        venue=payload.venue,
        organizer=payload.organizer,
        category=payload.category,
        tags=payload.tags,
        posters=[],
        ticket_price=payload.ticket_price,
        event_date=payload.event_date,
        event_time=payload.event_time,
        registration_open_at=payload.registration_open_at,
        registration_close_at=payload.registration_close_at,
        total_spots=payload.total_spots,
        registration_mode=reg.mode,
        external_url=reg.external_url or None,
        allow_guests=reg.allow_guests,
        capacity_override=reg.capacity_override,
        status=payload.status,
    )
    _validate_policy(event)
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Event %s created (%s)", event.id, event.title)
    return event


def update_event(db, event_id: str, payload) -> models.Event:
    """Apply a partial update.

    The mode lock is checked inside the same transaction that writes the
    edit: while any ticket is linked, registration.mode must stay internal.
    A rejected edit leaves the stored event untouched.
    """
    event = load(db, event_id, for_update=True)
    changes = payload.model_dump(exclude_unset=True, exclude={"registration"})
    reg_changes = (
        payload.registration.model_dump(exclude_unset=True)
        if payload.registration is not None
        else {}
    )

    new_mode = reg_changes.get("mode") or event.registration_mode
    if new_mode != "internal":
        linked = linked_ticket_count(db, event.id)
        if linked > 0:
            raise ModeLockedError(linked)

    if "slug" in changes:
        _check_slug_free(db, changes["slug"], own_id=event.id)

    for field, value in changes.items():
        if field in ("title", "description", "venue", "category", "event_date", "status") and value is None:
            raise BadRequestError(f"{field} cannot be null")
        setattr(event, field, value)

    field_map = {
        "mode": "registration_mode",
        "external_url": "external_url",
        "allow_guests": "allow_guests",
        "capacity_override": "capacity_override",
    }
    for field, value in reg_changes.items():
        if field in ("mode", "allow_guests") and value is None:
            continue
        if field == "capacity_override" and value is None:
            value = 0
        setattr(event, field_map[field], value)

    _validate_policy(event)
    db.commit()
    db.refresh(event)
    logger.info("Event %s updated: %s", event.id, sorted(set(changes) | set(reg_changes)))
    return event


def delete_event(db, media: MediaGateway, event_id: str) -> None:
    """Delete an event with its tickets; posters and QR images go best-effort."""
    event = load(db, event_id, for_update=True)
    media_refs = [
        {"mediaId": p.get("mediaId"), "kind": p.get("kind") or "image"}
        for p in (event.posters or [])
    ]
    qr_ids = db.execute(
        select(models.Ticket.qr_media_id).where(
            models.Ticket.event_id == event.id,
            models.Ticket.qr_media_id.isnot(None),
        )
    ).scalars().all()
    media_refs.extend({"mediaId": media_id, "kind": "image"} for media_id in qr_ids)

    ticket_ids = select(models.Ticket.id).where(models.Ticket.event_id == event.id)
    db.execute(
        delete(models.SideEffectJob)
        .where(models.SideEffectJob.ticket_id.in_(ticket_ids))
        .execution_options(synchronize_session=False)
    )
    db.execute(delete(models.event_tickets).where(models.event_tickets.c.event_id == event.id))
    db.execute(
        delete(models.Ticket)
        .where(models.Ticket.event_id == event.id)
        .execution_options(synchronize_session=False)
    )
    db.delete(event)
    db.commit()
    logger.info("Event %s deleted with %d media object(s) to clean up", event_id, len(media_refs))

    if media_refs:
        media.delete_many(media_refs)


def add_poster(db, media: MediaGateway, event_id: str, data: bytes, content_type: str) -> List[dict]:
    load(db, event_id)
    db.rollback()

    uploaded = media.upload(
        data,
        folder=POSTER_FOLDER,
        content_type=content_type,
        allowed=POSTER_CONTENT_TYPES,
    )
    try:
        event = load(db, event_id, for_update=True)
    except EventNotFoundError:
        media.delete_many([uploaded])
        raise
    # Reassign so the JSON column registers the change
    event.posters = list(event.posters or []) + [uploaded]
    db.commit()
    return event.posters


def remove_poster(db, media: MediaGateway, event_id: str, media_id: str) -> None:
    event = load(db, event_id)
    match = next((p for p in (event.posters or []) if p.get("mediaId") == media_id), None)
    if match is None:
        raise NotFoundError("Poster not found on this event.")
    db.rollback()

    media.delete(media_id, match.get("kind") or "image")

    event = load(db, event_id, for_update=True)
    event.posters = [p for p in (event.posters or []) if p.get("mediaId") != media_id]
    db.commit()
