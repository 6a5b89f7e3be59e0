from dataclasses import dataclass, field
from typing import Callable

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from syntax_events.codes import CodeService
from syntax_events.config import Settings
from syntax_events.database import create_db_engine, make_session_factory, utcnow
from syntax_events.media import CloudinaryMediaGateway, MediaGateway
from syntax_events.notifications import Notifier, SmtpNotifier
from syntax_events.outbox import SideEffectWorker
from syntax_events.registrar import Registrar


@dataclass
class AppContext:
    """Everything a handler needs, built once at startup."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    media: MediaGateway
    notifier: Notifier
    clock: Callable = utcnow
    codes: CodeService = field(init=False)
    worker: SideEffectWorker = field(init=False)
    registrar: Registrar = field(init=False)

    def __post_init__(self) -> None:
        self.codes = CodeService(self.media)
        self.worker = SideEffectWorker(self.session_factory, self.codes, self.notifier, self.clock)
        self.registrar = Registrar(self.session_factory, self.codes, self.worker, self.clock)

    def now(self):
        return self.clock()


def build_context(settings: Settings) -> AppContext:
    engine = create_db_engine(settings.database_url)
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=make_session_factory(engine),
        media=CloudinaryMediaGateway.from_settings(settings),
        notifier=SmtpNotifier.from_settings(settings),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(request: Request):
    db = get_context(request).session_factory()
    try:
        yield db
    finally:
        db.close()
