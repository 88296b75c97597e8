#!/usr/bin/env python3
"""
FloraOps -- Orders, staff, and delivery workflow backend for flower shops.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload
  python main.py init-db
  python main.py purge-sessions

Environment variables (or .env):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to floraops.db next to the code.
  DEBUG          true for local development (auto-generated SECRET_KEY).
"""

import argparse
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _init_db(args: argparse.Namespace) -> int:
    """Create all tables. Safe to run repeatedly."""
    from auth.store import SqlCredentialStore
    from orders.store import SqlOrderRepository

    url = get_settings().database_url
    for store in (SqlCredentialStore(url), SqlOrderRepository(url)):
        store.close()
    print(f"  Schema ready at {url}")
    return 0


def _purge_sessions(args: argparse.Namespace) -> int:
    """One-shot sweep of expired sessions, e.g. from cron."""
    from auth.sessions import SessionManager
    from auth.store import SqlCredentialStore

    store = SqlCredentialStore(get_settings().database_url)
    try:
        removed = SessionManager(store).purge_expired_sessions()
    finally:
        store.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="floraops",
        description="FloraOps backend: sessions, staff, and the order workflow.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  DATABASE_URL=sqlite:////var/lib/floraops/floraops.db python main.py init-db
  python main.py purge-sessions
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    serve.set_defaults(handler=_serve)

    init_db = sub.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(handler=_init_db)

    purge = sub.add_parser("purge-sessions", help="Delete expired sessions and exit")
    purge.set_defaults(handler=_purge_sessions)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
