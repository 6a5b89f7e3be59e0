"""Unit tests for registration availability and capacity derivation."""

from datetime import datetime, timedelta, timezone

import pytest

from syntax_events import models
from syntax_events.errors import EventFullError, RegistrationNotOpenError, UseExternalRegistrationError
from syntax_events.events import RegistrationStatus, evaluate_registration, is_valid_external_url
from syntax_events.registrar import gate

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
OPEN_AT = datetime(2025, 3, 1, tzinfo=timezone.utc)
CLOSE_AT = datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc)


def event(**overrides) -> models.Event:
    fields = dict(
        status="upcoming",
        registration_mode="internal",
        external_url=None,
        total_spots=0,
        capacity_override=0,
        active_ticket_count=0,
        registration_open_at=OPEN_AT,
        registration_close_at=CLOSE_AT,
    )
    fields.update(overrides)
    return models.Event(**fields)


class TestEvaluateRegistration:
    def test_open_window_is_open_internal(self):
        assert evaluate_registration(event(), NOW) is RegistrationStatus.OPEN_INTERNAL

    def test_cancelled_wins_over_everything(self):
        e = event(status="cancelled", registration_mode="external", external_url="https://ext.example/reg")
        assert evaluate_registration(e, NOW) is RegistrationStatus.CANCELLED

    def test_mode_none_is_closed(self):
        assert evaluate_registration(event(registration_mode="none"), NOW) is RegistrationStatus.CLOSED

    def test_external_with_url(self):
        e = event(registration_mode="external", external_url="https://ext.example/reg")
        assert evaluate_registration(e, NOW) is RegistrationStatus.OPEN_EXTERNAL

    def test_external_without_url_is_closed(self):
        e = event(registration_mode="external", external_url=None)
        assert evaluate_registration(e, NOW) is RegistrationStatus.CLOSED

    def test_external_ignores_capacity_and_window(self):
        e = event(
            registration_mode="external",
            external_url="https://ext.example/reg",
            total_spots=1,
            active_ticket_count=1,
            registration_open_at=None,
            registration_close_at=None,
        )
        assert evaluate_registration(e, NOW) is RegistrationStatus.OPEN_EXTERNAL

    @pytest.mark.parametrize("status", ["completed", "ongoing"])
    def test_running_or_finished_events_are_closed(self, status):
        assert evaluate_registration(event(status=status), NOW) is RegistrationStatus.CLOSED

    def test_full_beats_window(self):
        e = event(total_spots=2, active_ticket_count=2)
        assert evaluate_registration(e, NOW) is RegistrationStatus.FULL

    def test_override_replaces_total_spots(self):
        e = event(total_spots=100, capacity_override=1, active_ticket_count=1)
        assert e.effective_capacity == 1
        assert evaluate_registration(e, NOW) is RegistrationStatus.FULL

    def test_unset_window_on_upcoming_is_closed(self):
        e = event(registration_open_at=None, registration_close_at=None)
        assert evaluate_registration(e, NOW) is RegistrationStatus.CLOSED

    def test_unset_window_on_postponed_is_past(self):
        e = event(status="postponed", registration_open_at=None, registration_close_at=None)
        assert evaluate_registration(e, NOW) is RegistrationStatus.PAST

    def test_before_open_is_coming_soon(self):
        assert evaluate_registration(event(), OPEN_AT - timedelta(seconds=1)) is RegistrationStatus.COMING_SOON

    def test_window_bounds_are_inclusive(self):
        assert evaluate_registration(event(), OPEN_AT) is RegistrationStatus.OPEN_INTERNAL
        assert evaluate_registration(event(), CLOSE_AT) is RegistrationStatus.OPEN_INTERNAL

    def test_after_close_is_closed(self):
        assert evaluate_registration(event(), CLOSE_AT + timedelta(seconds=1)) is RegistrationStatus.CLOSED


class TestCapacity:
    def test_zero_means_unlimited(self):
        e = event(total_spots=0, active_ticket_count=500)
        assert e.effective_capacity == 0
        assert e.spots_left is None
        assert e.is_full is False

    def test_spots_left_never_negative(self):
        e = event(total_spots=2, active_ticket_count=3)
        assert e.spots_left == 0
        assert e.is_full is True


class TestGate:
    def test_open_internal_passes(self):
        gate(RegistrationStatus.OPEN_INTERNAL, event())

    def test_external_carries_url(self):
        e = event(registration_mode="external", external_url="https://ext.example/reg")
        with pytest.raises(UseExternalRegistrationError) as exc:
            gate(RegistrationStatus.OPEN_EXTERNAL, e)
        assert exc.value.details == {"externalUrl": "https://ext.example/reg"}

    def test_full_is_event_full(self):
        with pytest.raises(EventFullError):
            gate(RegistrationStatus.FULL, event())

    @pytest.mark.parametrize(
        "status",
        [
            RegistrationStatus.CANCELLED,
            RegistrationStatus.CLOSED,
            RegistrationStatus.COMING_SOON,
            RegistrationStatus.PAST,
        ],
    )
    def test_other_states_are_not_open(self, status):
        with pytest.raises(RegistrationNotOpenError) as exc:
            gate(status, event())
        assert exc.value.reason == status.value.lower()


@pytest.mark.parametrize(
    "url, valid",
    [
        ("https://ext.example/reg", True),
        ("http://ext.example", True),
        ("ftp://ext.example/reg", False),
        ("ext.example/reg", False),
        ("", False),
        (None, False),
    ],
)
def test_external_url_validation(url, valid):
    assert is_valid_external_url(url) is valid
