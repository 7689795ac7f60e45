"""CLI entry point: run the server and perform operator tasks."""

from __future__ import annotations

import argparse
import logging
import sys
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv


def _init_stores() -> None:
    from interview_coach.web.app import startup
    startup()


def _serve(args) -> int:
    import uvicorn
    uvicorn.run("interview_coach.web.app:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _grant_tokens(args) -> int:
    from interview_coach.web.tokens import add_tokens, get_balance
    from interview_coach.web.users import get_user_by_email

    try:
        amount = Decimal(args.amount)
    except InvalidOperation:
        print(f"Invalid amount: {args.amount}", file=sys.stderr)
        return 1
    if amount <= 0:
        print("Amount must be positive", file=sys.stderr)
        return 1
    _init_stores()
    user = get_user_by_email(args.email)
    if not user:
        print(f"No user with email {args.email}", file=sys.stderr)
        return 1
    add_tokens(user.id, amount)
    print(f"{user.email}: balance {get_balance(user.id)}")
    return 0


def _sweep(args) -> int:
    from interview_coach.web.worker import sweep_stale_jobs

    _init_stores()
    swept = sweep_stale_jobs(args.minutes)
    print(f"Failed and refunded {swept} stale job(s)")
    return 0


def _cleanup(args) -> int:
    from interview_coach.web.jobs import cleanup_old_jobs

    _init_stores()
    deleted = cleanup_old_jobs(args.days)
    print(f"Deleted {deleted} finished job(s) older than {args.days} days")
    return 0


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Interview Coach server and maintenance tasks")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the web server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)

    grant = sub.add_parser("grant-tokens", help="Add tokens to a user's balance")
    grant.add_argument("email")
    grant.add_argument("amount")
    grant.set_defaults(func=_grant_tokens)

    sweep = sub.add_parser("sweep-stale-jobs", help="Fail and refund jobs stuck in processing")
    sweep.add_argument("--minutes", type=int, default=15)
    sweep.set_defaults(func=_sweep)

    cleanup = sub.add_parser("cleanup-jobs", help="Delete old completed/failed jobs")
    cleanup.add_argument("--days", type=int, default=7)
    cleanup.set_defaults(func=_cleanup)

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
