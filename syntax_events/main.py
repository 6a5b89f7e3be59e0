import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from syntax_events import events, schemas, ticket_admin, tickets
from syntax_events.auth import Caller, get_caller, require_admin
from syntax_events.config import Settings
from syntax_events.context import AppContext, build_context, get_context, get_db
from syntax_events.database import init_db, ping_db
from syntax_events.errors import BadRequestError, DomainError, TicketNotFoundError

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

API_PREFIX = "/api/v1"


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

def _startup(app: FastAPI, ctx: AppContext) -> None:
    ping_db(ctx.engine)
    init_db(ctx.engine)
    logger.info("Database connection verified.")

    try:
        ctx.media.ping()
        logger.info("Media storage connection verified.")
    except DomainError as exc:
        # The server still runs; uploads and deletes will fail until it recovers
        logger.warning("Media storage connection failed: %s", exc.message)

    if ctx.settings.redis_url:
        logger.info("REDIS_URL is set; rate limiting is handled outside this service.")
    if not ctx.settings.email_enabled:
        logger.warning("Email not configured (SMTP_USER/SMTP_PASS not set); confirmations will be marked failed.")

    try:
        ctx.worker.drain()
    except Exception:
        # Pending jobs stay queued for the next drain
        logger.exception("Draining side-effect jobs at startup failed")
    app.state.context = ctx


def create_app(context: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = context.settings if context is not None else settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context if context is not None else build_context(settings)
        _startup(app, ctx)
        yield
        ctx.engine.dispose()

    app = FastAPI(title="Syntax Events API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    @app.get("/api/health")
    def health_check():
        return {"status": "ok"}

    app.include_router(events_router, prefix=API_PREFIX)
    app.include_router(tickets_router, prefix=API_PREFIX)
    return app


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

async def _domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    body = BadRequestError("Invalid request", {"errors": errors}).to_dict()
    return JSONResponse(status_code=400, content=jsonable_encoder(body))


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL", "message": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

events_router = APIRouter(prefix="/events", tags=["events"])


@events_router.get("", response_model=schemas.EventPage)
def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[schemas.EventStatus] = None,
    period: Optional[str] = Query(None, pattern="^(upcoming|past)$"),
    search: Optional[str] = None,
    sort_by: str = Query("eventDate", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    return events.list_events(
        db, ctx.now(), page=page, limit=limit, status=status, period=period,
        search=search, sort_by=sort_by, sort_order=sort_order,
    )


@events_router.get(
    "/admin/statistics",
    response_model=schemas.EventStats,
    dependencies=[Depends(require_admin)],
)
def event_statistics(db: Session = Depends(get_db)):
    return events.statistics(db)


@events_router.post(
    "",
    response_model=schemas.EventOut,
    status_code=201,
    dependencies=[Depends(require_admin)],
)
def create_event(
    payload: schemas.EventCreate,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    event = events.create_event(db, payload, ctx.now())
    return events.to_detail(event, ctx.now(), 0)


@events_router.get("/{event_id}", response_model=schemas.EventOut)
def get_event(event_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_context)):
    """Full event record; never includes ticket holders."""
    event = events.load(db, event_id)
    return events.to_detail(event, ctx.now(), events.linked_ticket_count(db, event.id))


@events_router.get("/{event_id}/public", response_model=schemas.PublicEventOut)
def get_public_event(event_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_context)):
    event = events.load(db, event_id)
    return events.to_public(event, ctx.now(), events.linked_ticket_count(db, event.id))


@events_router.patch(
    "/{event_id}",
    response_model=schemas.EventOut,
    dependencies=[Depends(require_admin)],
)
def update_event(
    event_id: str,
    payload: schemas.EventUpdate,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    event = events.update_event(db, event_id, payload)
    return events.to_detail(event, ctx.now(), events.linked_ticket_count(db, event.id))


@events_router.delete("/{event_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_event(event_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_context)):
    events.delete_event(db, ctx.media, event_id)
    return Response(status_code=204)


@events_router.get(
    "/{event_id}/registrations",
    response_model=list[schemas.TicketOut],
    dependencies=[Depends(require_admin)],
)
def event_registrations(event_id: str, db: Session = Depends(get_db)):
    return events.list_registrations(db, event_id)


@events_router.post(
    "/{event_id}/posters",
    response_model=list[schemas.Poster],
    status_code=201,
    dependencies=[Depends(require_admin)],
)
def add_poster(
    event_id: str,
    poster: UploadFile = File(...),
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    data = poster.file.read()
    return events.add_poster(db, ctx.media, event_id, data, poster.content_type or "")


@events_router.delete(
    "/{event_id}/posters/{media_id:path}",
    status_code=204,
    dependencies=[Depends(require_admin)],
)
def remove_poster(
    event_id: str,
    media_id: str,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    events.remove_poster(db, ctx.media, event_id, media_id)
    return Response(status_code=204)


@events_router.post("/{event_id}/register", response_model=schemas.RegistrationOut, status_code=201)
def register_for_event(
    event_id: str,
    payload: schemas.RegistrationRequest,
    ctx: AppContext = Depends(get_context),
):
    ticket = ctx.registrar.register(event_id, payload)
    return {
        "message": "Registration successful! Your ticket will be sent to your email.",
        "ticket": ticket,
    }


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------

tickets_router = APIRouter(prefix="/tickets", tags=["tickets"])


@tickets_router.post("/register", response_model=schemas.RegistrationOut, status_code=201)
def register_ticket(payload: schemas.RegistrationRequest, ctx: AppContext = Depends(get_context)):
    if not payload.event_id:
        raise BadRequestError("eventId is required.")
    return register_for_event(payload.event_id, payload, ctx)


@tickets_router.post("/check-availability", response_model=schemas.AvailabilityOut)
def check_availability(payload: schemas.AvailabilityRequest, db: Session = Depends(get_db)):
    return ticket_admin.check_availability(db, payload.event_id, payload.email, payload.student_id)


@tickets_router.get("", response_model=schemas.TicketPage, dependencies=[Depends(require_admin)])
def list_tickets(
    event_id: Optional[str] = Query(None, alias="eventId"),
    status: Optional[schemas.TicketStatus] = None,
    email_status: Optional[schemas.EmailStatus] = Query(None, alias="emailStatus"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return ticket_admin.list_tickets(
        db, event_id=event_id, status=status, email_status=email_status, page=page, limit=limit
    )


@tickets_router.get("/{code_or_id}", response_model=schemas.TicketOut)
def get_ticket(code_or_id: str, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    """Holding the ticket code is proof enough; internal ids are admin-only."""
    ticket = tickets.find_by_code(db, code_or_id)
    if ticket is None and caller.is_admin:
        ticket = tickets.find_by_internal_id(db, code_or_id)
    if ticket is None:
        raise TicketNotFoundError(code_or_id)
    return ticket


@tickets_router.patch(
    "/{code_or_id}",
    response_model=schemas.TicketOut,
    dependencies=[Depends(require_admin)],
)
def update_ticket_status(
    code_or_id: str,
    payload: schemas.TicketStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AppContext = Depends(get_context),
):
    return ticket_admin.transition(db, code_or_id, payload.status, ctx.now())


@tickets_router.delete("/{code_or_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_ticket(code_or_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_context)):
    ticket_admin.delete_ticket(db, ctx.media, code_or_id)
    return Response(status_code=204)


@tickets_router.post(
    "/{code_or_id}/resend-email",
    response_model=schemas.TicketOut,
    dependencies=[Depends(require_admin)],
)
def resend_ticket_email(code_or_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(get_context)):
    return ticket_admin.resend_email(db, ctx.worker, code_or_id)


app = create_app()
