"""Registration coordinator.

``Registrar.register`` is the only way a ticket comes into existence:

1. load the event and gate on its registration status;
2. in one transaction: re-read the event, re-check the window, take a seat
   with a conditional UPDATE, insert the ticket, link it to the event and
   queue its side-effect jobs;
3. after commit, run the QR and email jobs. Their failures are recorded on
   the ticket and never undo the registration.
"""

import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from syntax_events import events, models, outbox, tickets
from syntax_events.codes import CodeService
from syntax_events.database import utcnow
from syntax_events.errors import (
    DomainError,
    DuplicateAttendeeError,
    EventFullError,
    InternalError,
    RegistrationNotOpenError,
    UseExternalRegistrationError,
)
from syntax_events.events import RegistrationStatus
from syntax_events.schemas import RegistrationRequest

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 3


def gate(status: RegistrationStatus, event: models.Event) -> None:
    """Raise unless ``status`` lets an internal registration through."""
    if status is RegistrationStatus.OPEN_INTERNAL:
        return
    if status is RegistrationStatus.OPEN_EXTERNAL:
        raise UseExternalRegistrationError(event.external_url)
    if status is RegistrationStatus.FULL:
        raise EventFullError()
    raise RegistrationNotOpenError(status.reason)


class Registrar:
    def __init__(
        self,
        session_factory,
        codes: CodeService,
        worker: outbox.SideEffectWorker,
        clock: Callable = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.codes = codes
        self.worker = worker
        self.clock = clock

    def register(self, event_id: str, request: RegistrationRequest) -> models.Ticket:
        with self.session_factory() as db:
            event = events.load(db, event_id)
            gate(events.evaluate_registration(event, self.clock()), event)

        ticket = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = self.codes.mint_code()
            try:
                ticket = self._create(event_id, request, code)
                break
            except tickets.TicketCodeTaken:
                logger.warning("Ticket code collision (attempt %d/%d)", attempt, MAX_CODE_ATTEMPTS)
            except DomainError:
                raise
            except SQLAlchemyError:
                logger.exception("Registration for event %s failed in the store", event_id)
                raise InternalError()
        if ticket is None:
            raise InternalError("Could not issue a unique ticket code")

        logger.info("Ticket %s issued for event %s", ticket.ticket_code, event_id)

        # Registration is durable from here on; unfinished jobs are left for drain()
        try:
            self.worker.run_for_ticket(ticket.ticket_code)
            with self.session_factory() as db:
                return tickets.find_by_code(db, ticket.ticket_code) or ticket
        except Exception:
            logger.exception("Post-registration work for ticket %s did not complete", ticket.ticket_code)
            return ticket

    def _create(self, event_id: str, request: RegistrationRequest, code: str) -> models.Ticket:
        with self.session_factory() as db:
            try:
                event = events.load(db, event_id, for_update=True)

                # Policy may have changed, or the clock moved, since the first gate
                gate(events.evaluate_registration(event, self.clock()), event)

                capacity = event.effective_capacity
                if capacity > 0 and tickets.count_active_for_event(db, event.id) >= capacity:
                    raise EventFullError()
                if not events.reserve_seat(db, event.id):
                    raise EventFullError()

                conflict = tickets.find_conflict(db, event.id, request.email, request.student_id)
                if conflict:
                    raise DuplicateAttendeeError(conflict)

                now = self.clock()
                ticket = models.Ticket(
                    ticket_code=code,
                    event_id=event.id,
                    event_name=event.title,
                    full_name=request.full_name,
                    email=request.email,
                    phone=request.phone,
                    student_id=request.student_id,
                    gender=request.gender,
                    course=request.course,
                    hosteler=request.hosteler,
                    hostel=request.hostel,
                    payment_details=request.payment_details,
                    status="active",
                    email_status="pending",
                    created_at=now,
                    updated_at=now,
                )
                tickets.insert_in_transaction(db, ticket)
                events.link_ticket(db, event.id, ticket.id)
                outbox.enqueue(db, ticket)
                db.commit()
            except BaseException:
                db.rollback()
                raise
            return ticket
