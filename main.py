#!/usr/bin/env python3
"""
ScholarGate -- account service for students and universities.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py purge-tokens

Configuration comes from the environment / .env (see core/config.py).
ACCESS_SECRET_KEY and REFRESH_SECRET_KEY are required unless DEBUG=true.
"""

import argparse

from core.config import get_settings


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)


def _purge_tokens(args: argparse.Namespace) -> None:
    """Delete expired verification and recovery tokens once and report the count."""
    from auth.store import TokenStore, create_store_engine

    settings = get_settings()
    engine = create_store_engine(settings.database_url, timeout=settings.store_timeout_seconds)
    try:
        removed = TokenStore(engine).purge_expired()
    finally:
        engine.dispose()
    print(f"  Removed {removed} expired token(s).")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="scholargate",
        description="Student and university account service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  DEBUG=true python main.py serve
  python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    serve.set_defaults(func=_serve)

    purge = sub.add_parser("purge-tokens", help="Delete expired verification and recovery tokens")
    purge.set_defaults(func=_purge_tokens)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
