"""Command line entry point.

    python -m syntax_events serve [--host HOST] [--port PORT]
    python -m syntax_events drain [--limit N]

Exit status is 0 on a clean shutdown and 1 when startup fails.
"""

import argparse
import logging
import sys

import uvicorn
from sqlalchemy.exc import SQLAlchemyError

from syntax_events.config import Settings
from syntax_events.context import build_context
from syntax_events.database import init_db, ping_db

logger = logging.getLogger("syntax_events")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="syntax_events", description="Syntax Events API")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None, help="Defaults to $PORT or 8000")

    drain = sub.add_parser("drain", help="Run pending QR/email jobs and exit")
    drain.add_argument("--limit", type=int, default=100)
    return parser


def _checked_context(settings: Settings):
    missing = settings.missing_required()
    if missing:
        if settings.is_production:
            logger.error("Missing required environment variables: %s", ", ".join(missing))
            return None
        logger.warning("Missing environment variables (ok outside production): %s", ", ".join(missing))

    ctx = build_context(settings)
    try:
        ping_db(ctx.engine)
        init_db(ctx.engine)
    except SQLAlchemyError as exc:
        logger.error("Database unreachable: %s", exc)
        return None
    return ctx


def serve(args, settings: Settings) -> int:
    from syntax_events.main import create_app

    ctx = _checked_context(settings)
    if ctx is None:
        return 1
    port = args.port or settings.port
    logger.info("Starting API on %s:%d (%s)", args.host, port, settings.app_env)
    uvicorn.run(create_app(ctx), host=args.host, port=port)
    return 0


def drain(args, settings: Settings) -> int:
    ctx = _checked_context(settings)
    if ctx is None:
        return 1
    count = ctx.worker.drain(limit=args.limit)
    logger.info("Processed %d job(s)", count)
    ctx.engine.dispose()
    return 0


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.command == "serve":
        return serve(args, settings)
    return drain(args, settings)


if __name__ == "__main__":
    sys.exit(main())
