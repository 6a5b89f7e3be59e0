"""Post-commit side effects (QR image, confirmation email) as outbox jobs.

The registrar writes one ``qr`` and one ``email`` job in the same
transaction that creates the ticket. The worker runs them after commit and
projects the outcome onto ``ticket.qr`` and ``ticket.email_status``.
Nothing here raises to the caller: a failed job is recorded and logged.

A job is claimed with a conditional UPDATE before any outbound call, and no
database transaction is held open across the call itself.
"""

import logging
from datetime import timedelta
from typing import Callable, List

from sqlalchemy import or_, select, update

from syntax_events import models, tickets
from syntax_events.codes import CodeService
from syntax_events.database import utcnow
from syntax_events.notifications import Notifier

logger = logging.getLogger(__name__)

JOB_KINDS = ("qr", "email")
STALE_AFTER = timedelta(minutes=5)


def enqueue(db, ticket: models.Ticket) -> None:
    for kind in JOB_KINDS:
        db.add(models.SideEffectJob(ticket_id=ticket.id, ticket_code=ticket.ticket_code, kind=kind))


class SideEffectWorker:
    def __init__(
        self,
        session_factory,
        codes: CodeService,
        notifier: Notifier,
        clock: Callable = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.codes = codes
        self.notifier = notifier
        self.clock = clock

    # ── entry points ────────────────────────────────────────────────────────

    def run_for_ticket(self, ticket_code: str) -> None:
        with self.session_factory() as db:
            job_ids = self._job_ids(
                db,
                select(models.SideEffectJob).where(
                    models.SideEffectJob.ticket_code == ticket_code,
                    models.SideEffectJob.status == "pending",
                ),
            )
        for job_id in job_ids:
            self.run_job(job_id)

    def drain(self, limit: int = 100) -> int:
        """Run pending jobs, and running ones abandoned by a dead process."""
        stale_before = self.clock() - STALE_AFTER
        with self.session_factory() as db:
            job_ids = self._job_ids(
                db,
                select(models.SideEffectJob)
                .where(
                    or_(
                        models.SideEffectJob.status == "pending",
                        (models.SideEffectJob.status == "running")
                        & (models.SideEffectJob.updated_at < stale_before),
                    )
                )
                .limit(limit),
            )
        for job_id in job_ids:
            self.run_job(job_id, reclaim_before=stale_before)
        if job_ids:
            logger.info("Drained %d side-effect job(s)", len(job_ids))
        return len(job_ids)

    def requeue(self, db, ticket: models.Ticket, kind: str) -> None:
        """Reset the ``kind`` job of ``ticket`` to pending (caller commits)."""
        job = db.execute(
            select(models.SideEffectJob).where(
                models.SideEffectJob.ticket_code == ticket.ticket_code,
                models.SideEffectJob.kind == kind,
            )
        ).scalar_one_or_none()
        if job is None:
            db.add(models.SideEffectJob(ticket_id=ticket.id, ticket_code=ticket.ticket_code, kind=kind))
        else:
            job.status = "pending"
            job.last_error = None

    def requeue_email(self, db, ticket: models.Ticket) -> None:
        self.requeue(db, ticket, "email")
        tickets.set_email_status(db, ticket, "pending")

    # ── internals ──────────────────────────────────────────────────────────

    @staticmethod
    def _job_ids(db, stmt) -> List[int]:
        # QR before email so the email can carry the QR link
        jobs = list(db.execute(stmt.order_by(models.SideEffectJob.id)).scalars().all())
        jobs.sort(key=lambda job: (job.ticket_code, JOB_KINDS.index(job.kind), job.id))
        return [job.id for job in jobs]

    def _claim(self, job_id: int, reclaim_before=None) -> bool:
        claimable = models.SideEffectJob.status == "pending"
        if reclaim_before is not None:
            claimable = or_(
                claimable,
                (models.SideEffectJob.status == "running")
                & (models.SideEffectJob.updated_at < reclaim_before),
            )
        with self.session_factory() as db:
            result = db.execute(
                update(models.SideEffectJob)
                .where(models.SideEffectJob.id == job_id, claimable)
                .values(
                    status="running",
                    attempts=models.SideEffectJob.attempts + 1,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

    def run_job(self, job_id: int, reclaim_before=None) -> None:
        if not self._claim(job_id, reclaim_before):
            return

        with self.session_factory() as db:
            job = db.get(models.SideEffectJob, job_id)
            if job is None:
                return
            ticket = tickets.find_by_code(db, job.ticket_code)
            if ticket is None:
                # Ticket deleted since the job was queued
                job.status = "done"
                db.commit()
                return
            kind = job.kind
            event_date = db.get(models.Event, ticket.event_id).event_date
            db.commit()

        error = None
        outcome = None
        try:
            if kind == "qr":
                outcome = self.codes.render_qr(ticket.ticket_code, previous_media_id=ticket.qr_media_id)
            else:
                self.notifier.send_registration(ticket, event_date, ticket.qr_url)
        except Exception as exc:
            error = exc
            logger.error(
                "Post-registration %s failed for ticket %s: %s", kind, ticket.ticket_code, exc
            )

        with self.session_factory() as db:
            job = db.get(models.SideEffectJob, job_id)
            if job is None:
                return
            current = tickets.find_by_code(db, ticket.ticket_code)
            if current is not None:
                if kind == "qr" and outcome is not None:
                    tickets.attach_qr(db, current, outcome)
                elif kind == "email":
                    tickets.set_email_status(db, current, "failed" if error else "sent")
            job.status = "failed" if error else "done"
            job.last_error = str(error)[:1000] if error else None
            db.commit()
