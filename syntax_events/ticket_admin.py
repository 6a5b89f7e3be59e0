import logging
from datetime import datetime
from typing import Optional

from syntax_events import events, tickets
from syntax_events.errors import DuplicateAttendeeError
from syntax_events.media import MediaGateway
from syntax_events.outbox import SideEffectWorker

logger = logging.getLogger(__name__)


def list_tickets(
    db,
    event_id: Optional[str] = None,
    status: Optional[str] = None,
    email_status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """Newest first; ties broken by id so pages stay stable."""
    return tickets.list_by_event(
        db, event_id, page=page, limit=limit, status=status, email_status=email_status
    )


def transition(db, id_or_code: str, status: str, now: datetime):
    ticket = tickets.patch_status(db, id_or_code, status, now)
    db.commit()
    logger.info("Ticket %s → %s", ticket.ticket_code, status)
    return ticket


def delete_ticket(db, media: MediaGateway, id_or_code: str):
    ticket = tickets.delete_by_id_or_code(db, id_or_code)
    db.commit()
    logger.info("Ticket %s deleted from event %s", ticket.ticket_code, ticket.event_id)

    if ticket.qr_media_id:
        try:
            media.delete(ticket.qr_media_id, "image")
        except Exception as exc:
            logger.warning("QR %s left behind for deleted ticket: %s", ticket.qr_media_id, exc)
    return ticket


def check_availability(db, event_id: str, email: Optional[str], student_id: Optional[str]) -> dict:
    """Read-only check with the same uniqueness rules as registration."""
    events.load(db, event_id)
    field = tickets.find_conflict(db, event_id, email, student_id)
    if field:
        raise DuplicateAttendeeError(field)
    return {"available": True}


def resend_email(db, worker: SideEffectWorker, id_or_code: str):
    """Re-send the confirmation, rendering the QR first if it never made it."""
    ticket = tickets.find_by_id_or_code(db, id_or_code, for_update=True)
    if not ticket.qr_url:
        worker.requeue(db, ticket, "qr")
    worker.requeue_email(db, ticket)
    db.commit()
    code = ticket.ticket_code
    try:
        worker.run_for_ticket(code)
    except Exception:
        logger.exception("Resend for ticket %s did not complete; jobs left pending", code)
    db.expire_all()
    return tickets.find_by_code(db, code)
