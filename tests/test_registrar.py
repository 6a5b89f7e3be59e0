"""End-to-end registration scenarios, through the HTTP API and the Registrar."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError
from conftest import attendee

from syntax_events import events, models, tickets
from syntax_events.errors import DomainError, EventFullError, InternalError
from syntax_events.schemas import RegistrationRequest


def register(client, event_id, body):
    return client.post(f"/api/v1/events/{event_id}/register", json=body)


class TestHappyPath:
    def test_register_creates_active_ticket(self, client, ctx, make_event, notifier):
        event_id = make_event(total_spots=2)
        body = {
            "email": "a@x.io",
            "studentId": "12345678",
            "fullName": "A",
            "phone": "999",
            "course": "CS",
            "gender": "F",
            "hosteler": False,
        }

        resp = register(client, event_id, body)

        assert resp.status_code == 201
        ticket = resp.json()["ticket"]
        assert ticket["status"] == "active"
        assert ticket["ticketCode"]
        assert ticket["emailStatus"] in ("pending", "sent", "failed")
        assert ticket["eventId"] == event_id
        assert ticket["eventName"] == "Hack Night"

        with ctx.session_factory() as db:
            event = events.load(db, event_id)
            assert [t.id for t in event.tickets] == [ticket["id"]]
            assert event.active_ticket_count == 1

    def test_side_effects_recorded_on_ticket(self, client, make_event, notifier):
        event_id = make_event()
        ticket = register(client, event_id, attendee()).json()["ticket"]

        assert ticket["emailStatus"] == "sent"
        assert ticket["qr"]["mediaId"] == f"tickets/qr/{ticket['ticketCode']}"
        assert notifier.sent == [
            {"code": ticket["ticketCode"], "email": "user1@x.io", "qr_url": ticket["qr"]["url"]}
        ]

    def test_ticket_route_takes_event_id_in_body(self, client, make_event):
        event_id = make_event()
        resp = client.post("/api/v1/tickets/register", json={**attendee(), "eventId": event_id})
        assert resp.status_code == 201
        assert resp.json()["ticket"]["eventId"] == event_id

    def test_ticket_route_requires_event_id(self, client):
        resp = client.post("/api/v1/tickets/register", json=attendee())
        assert resp.status_code == 400
        assert resp.json()["error"] == "BAD_REQUEST"

    def test_email_is_lowercased(self, client, make_event):
        event_id = make_event()
        ticket = register(client, event_id, attendee(email="  Mixed@X.IO ")).json()["ticket"]
        assert ticket["email"] == "mixed@x.io"

    def test_payment_details_pass_through(self, client, ctx, make_event):
        event_id = make_event()
        payment = {"ref": "UPI-123", "amount": 50}
        ticket = register(client, event_id, attendee(paymentDetails=payment)).json()["ticket"]
        with ctx.session_factory() as db:
            assert tickets.find_by_code(db, ticket["ticketCode"]).payment_details == payment


class TestInputValidation:
    @pytest.mark.parametrize("field", ["fullName", "phone", "studentId", "course", "gender"])
    def test_blank_fields_rejected(self, client, make_event, field):
        resp = register(client, make_event(), attendee(**{field: "   "}))
        assert resp.status_code == 400
        assert resp.json()["error"] == "BAD_REQUEST"

    def test_invalid_email_rejected(self, client, make_event):
        resp = register(client, make_event(), attendee(email="not-an-email"))
        assert resp.status_code == 400

    def test_hosteler_needs_hostel(self, client, make_event):
        resp = register(client, make_event(), attendee(hosteler=True))
        assert resp.status_code == 400

    def test_hostel_dropped_for_day_scholars(self, client, make_event):
        ticket = register(client, make_event(), attendee(hosteler=False, hostel="H4")).json()["ticket"]
        assert ticket["hostel"] is None

    def test_unknown_event(self, client):
        resp = register(client, "does-not-exist", attendee())
        assert resp.status_code == 404
        assert resp.json()["error"] == "EVENT_NOT_FOUND"


class TestDuplicateAttendee:
    def test_same_email_any_case(self, client, make_event):
        event_id = make_event(total_spots=2)
        assert register(client, event_id, attendee(1, email="a@x.io")).status_code == 201

        resp = register(client, event_id, attendee(2, email="A@X.io"))

        assert resp.status_code == 409
        assert resp.json()["error"] == "DUPLICATE_ATTENDEE"
        assert resp.json()["details"] == {"field": "email"}

    def test_same_student_id(self, client, make_event):
        event_id = make_event()
        register(client, event_id, attendee(1, studentId="S1"))
        resp = register(client, event_id, attendee(2, studentId="S1"))
        assert resp.status_code == 409
        assert resp.json()["details"] == {"field": "studentId"}

    def test_email_reported_before_student_id(self, client, make_event):
        event_id = make_event()
        register(client, event_id, attendee(1))
        resp = register(client, event_id, attendee(1))
        assert resp.json()["details"] == {"field": "email"}

    def test_duplicate_does_not_take_a_seat(self, client, ctx, make_event):
        event_id = make_event(total_spots=5)
        register(client, event_id, attendee(1))
        register(client, event_id, attendee(1))
        with ctx.session_factory() as db:
            assert events.load(db, event_id).active_ticket_count == 1

    def test_same_attendee_other_event_is_fine(self, client, make_event):
        assert register(client, make_event(), attendee(1)).status_code == 201
        assert register(client, make_event(), attendee(1)).status_code == 201


class TestCapacity:
    def test_last_seat_race(self, ctx, make_event):
        event_id = make_event(total_spots=100, capacity_override=1)

        def attempt(n):
            try:
                return ctx.registrar.register(event_id, RegistrationRequest(**attendee(n)))
            except DomainError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(attempt, range(1, 6)))

        issued = [r for r in results if isinstance(r, models.Ticket)]
        rejected = [r for r in results if isinstance(r, EventFullError)]
        assert len(issued) == 1
        assert len(rejected) == 4

        with ctx.session_factory() as db:
            assert tickets.count_active_for_event(db, event_id) == 1
            assert events.load(db, event_id).active_ticket_count == 1

    def test_unlimited_event_under_concurrent_load(self, ctx, make_event, notifier):
        event_id = make_event(total_spots=0, capacity_override=0)

        def attempt(n):
            try:
                return ctx.registrar.register(event_id, RegistrationRequest(**attendee(n)))
            except Exception as exc:
                return exc

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(1, 21)))

        errors = [r for r in results if not isinstance(r, models.Ticket)]
        assert errors == []
        assert len({r.ticket_code for r in results}) == 20
        assert len(notifier.sent) == 20
        with ctx.session_factory() as db:
            assert tickets.count_active_for_event(db, event_id) == 20
            assert events.load(db, event_id).active_ticket_count == 20

    def test_full_event_returns_409(self, client, make_event):
        event_id = make_event(total_spots=1)
        assert register(client, event_id, attendee(1)).status_code == 201

        resp = register(client, event_id, attendee(2))

        assert resp.status_code == 409
        assert resp.json()["error"] == "EVENT_FULL"

    def test_cancelled_ticket_frees_seat(self, client, make_event, admin_headers):
        event_id = make_event(total_spots=1)
        code = register(client, event_id, attendee(1)).json()["ticket"]["ticketCode"]
        client.patch(f"/api/v1/tickets/{code}", json={"status": "cancelled"}, headers=admin_headers)

        assert register(client, event_id, attendee(2)).status_code == 201


class TestPolicyGate:
    def test_external_mode(self, client, ctx, make_event):
        event_id = make_event(registration_mode="external", external_url="https://ext.example/reg")

        resp = register(client, event_id, attendee())

        assert resp.status_code == 400
        assert resp.json()["error"] == "USE_EXTERNAL_REGISTRATION"
        assert resp.json()["details"] == {"externalUrl": "https://ext.example/reg"}
        with ctx.session_factory() as db:
            assert tickets.count_active_for_event(db, event_id) == 0

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"status": "cancelled"}, "cancelled"),
            ({"registration_mode": "none"}, "closed"),
            ({"status": "completed"}, "closed"),
            ({"registration_open_at": None, "registration_close_at": None}, "closed"),
        ],
    )
    def test_not_open(self, client, make_event, overrides, reason):
        resp = register(client, make_event(**overrides), attendee())
        assert resp.status_code == 400
        assert resp.json()["error"] == "REGISTRATION_NOT_OPEN"
        assert resp.json()["details"] == {"reason": reason}

    def test_coming_soon(self, client, make_event, clock):
        event_id = make_event()
        clock.now = clock.now.replace(month=2)
        resp = register(client, event_id, attendee())
        assert resp.json()["details"] == {"reason": "coming_soon"}


class TestCodeMinting:
    def test_collision_retries_with_new_code(self, ctx, make_event, monkeypatch):
        event_id = make_event()
        first = ctx.registrar.register(event_id, RegistrationRequest(**attendee(1)))

        codes = iter([first.ticket_code, "fresh-code"])
        monkeypatch.setattr(ctx.codes, "mint_code", lambda: next(codes))
        second = ctx.registrar.register(event_id, RegistrationRequest(**attendee(2)))

        assert second.ticket_code == "fresh-code"

    def test_persistent_collision_is_internal(self, ctx, make_event, monkeypatch):
        event_id = make_event(total_spots=10)
        first = ctx.registrar.register(event_id, RegistrationRequest(**attendee(1)))
        monkeypatch.setattr(ctx.codes, "mint_code", lambda: first.ticket_code)

        with pytest.raises(InternalError):
            ctx.registrar.register(event_id, RegistrationRequest(**attendee(2)))

        with ctx.session_factory() as db:
            assert events.load(db, event_id).active_ticket_count == 1


class TestPostCommitFailures:
    def test_email_outage_keeps_registration(self, client, make_event, notifier):
        notifier.fail = True
        event_id = make_event()

        resp = register(client, event_id, attendee())
        assert resp.status_code == 201
        code = resp.json()["ticket"]["ticketCode"]

        ticket = client.get(f"/api/v1/tickets/{code}").json()
        assert ticket["emailStatus"] == "failed"
        assert ticket["qr"] is not None

    def test_media_outage_leaves_qr_empty(self, client, make_event, media, notifier):
        media.fail_uploads = True
        event_id = make_event()

        ticket = register(client, event_id, attendee()).json()["ticket"]

        assert ticket["qr"] is None
        assert ticket["emailStatus"] == "sent"
        assert notifier.sent[0]["qr_url"] is None

    def test_store_error_after_commit_still_returns_ticket(self, client, ctx, make_event, notifier, monkeypatch):
        def locked(*args, **kwargs):
            raise OperationalError("UPDATE side_effect_jobs", {}, Exception("database is locked"))

        monkeypatch.setattr(ctx.worker, "_claim", locked)
        event_id = make_event()

        resp = register(client, event_id, attendee())

        assert resp.status_code == 201
        ticket = resp.json()["ticket"]
        assert ticket["emailStatus"] == "pending"
        assert notifier.sent == []
        with ctx.session_factory() as db:
            assert tickets.find_by_code(db, ticket["ticketCode"]) is not None
            assert events.load(db, event_id).active_ticket_count == 1

        monkeypatch.undo()
        ctx.worker.drain()
        assert client.get(f"/api/v1/tickets/{ticket['ticketCode']}").json()["emailStatus"] == "sent"
