"""Pytest configuration and shared fixtures."""

from datetime import datetime, timezone
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

from syntax_events import models
from syntax_events.auth import issue_token
from syntax_events.config import Settings
from syntax_events.context import AppContext
from syntax_events.database import create_db_engine, init_db, make_session_factory
from syntax_events.errors import MediaUnavailableError
from syntax_events.main import create_app
from syntax_events.media import MediaGateway, kind_for, validate_upload
from syntax_events.notifications import NotificationError, Notifier

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
SECRET = "test-secret"


class FakeMediaGateway(MediaGateway):
    """In-memory object store. Set ``fail_uploads`` to simulate an outage."""

    def __init__(self) -> None:
        self.objects: Dict[str, dict] = {}
        self.deleted: List[str] = []
        self.fail_uploads = False
        self._counter = 0

    def upload(self, data, folder, content_type, public_id=None, allowed=None):
        validate_upload(data, content_type, allowed)
        if self.fail_uploads:
            raise MediaUnavailableError("Failed to upload file to media storage")
        if public_id is None:
            self._counter += 1
            public_id = f"obj{self._counter}"
        media_id = f"{folder}/{public_id}"
        kind = kind_for(content_type)
        self.objects[media_id] = {"kind": kind, "size": len(data)}
        return {"url": f"https://media.test/{media_id}", "mediaId": media_id, "kind": kind}

    def delete(self, media_id, kind="image"):
        self.objects.pop(media_id, None)
        self.deleted.append(media_id)

    def delete_many(self, refs):
        for ref in refs:
            self.delete(ref["mediaId"], ref.get("kind") or "image")

    def ping(self):
        pass


class FakeNotifier(Notifier):
    """Records sends. Set ``fail`` to simulate a provider outage."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.fail = False

    def send_registration(self, ticket, event_date, qr_url):
        if self.fail:
            raise NotificationError("SMTP connection refused")
        self.sent.append({"code": ticket.ticket_code, "email": ticket.email, "qr_url": qr_url})


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def media() -> FakeMediaGateway:
    return FakeMediaGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def ctx(tmp_path, media, notifier, clock) -> AppContext:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        access_token_secret=SECRET,
        app_env="test",
    )
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    context = AppContext(
        settings=settings,
        engine=engine,
        session_factory=make_session_factory(engine),
        media=media,
        notifier=notifier,
        clock=clock,
    )
    yield context
    engine.dispose()


@pytest.fixture
def client(ctx) -> TestClient:
    with TestClient(create_app(ctx)) as c:
        yield c


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {issue_token(SECRET, 'admin-1', 'admin')}"}


@pytest.fixture
def member_headers() -> dict:
    return {"Authorization": f"Bearer {issue_token(SECRET, 'member-1', 'member')}"}


@pytest.fixture
def make_event(ctx):
    """Insert an event directly; defaults describe an open internal event."""

    def _make(**overrides) -> str:
        fields = dict(
            title="Hack Night",
            description="An evening of building things together.",
            venue="Lab 3",
            category="workshop",
            tags=[],
            posters=[],
            ticket_price=0,
            event_date=datetime(2025, 4, 10, 18, 0, tzinfo=timezone.utc),
            registration_open_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
            registration_close_at=datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc),
            total_spots=0,
            registration_mode="internal",
            external_url=None,
            allow_guests=True,
            capacity_override=0,
            status="upcoming",
            active_ticket_count=0,
        )
        fields.update(overrides)
        with ctx.session_factory() as db:
            event = models.Event(**fields)
            db.add(event)
            db.commit()
            return event.id

    return _make


def attendee(n: int = 1, **overrides) -> dict:
    body = {
        "fullName": f"Attendee {n}",
        "email": f"user{n}@x.io",
        "studentId": f"1000{n:04d}",
        "phone": "999",
        "course": "CS",
        "gender": "F",
        "hosteler": False,
    }
    body.update(overrides)
    return body
