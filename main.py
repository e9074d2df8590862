#!/usr/bin/env python3
"""
User Admin -- command-line entry point.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 3000
  python main.py create-user alice --email alice@example.com
  python main.py list-users

Environment variables (see core/config.py for the full list):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL of the user database (default: auth/useradmin.db).
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from core.config import get_settings
from core.errors import StoreUnavailableError


def _open_store():
    from auth.store import UserStore

    settings = get_settings()
    return UserStore(settings.database_url) if settings.database_url else UserStore()


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_create_user(args: argparse.Namespace) -> int:
    from pydantic import ValidationError

    from auth.models import User
    from auth.tokens import hash_password
    from web.forms import RegisterForm, form_errors

    password = getpass.getpass("Password: ")
    confirm = getpass.getpass("Confirm password: ")
    try:
        form = RegisterForm(
            username=args.username,
            email=args.email or "",
            full_name=args.full_name or "",
            password=password,
            confirm_password=confirm,
        )
    except ValidationError as exc:
        for line in form_errors(exc):
            print(f"  [!] {line}")
        return 1

    store = _open_store()
    try:
        user_id = store.create(
            User(
                username=form.username,
                hashed_password=hash_password(form.password),
                email=form.email,
                full_name=form.full_name,
            )
        )
    except IntegrityError:
        print(f"  [!] User '{form.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user '{form.username}' (id={user_id}).")
    return 0


def _cmd_list_users(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        users = store.list_all()
    finally:
        store.close()
    if not users:
        print("  No users.")
        return 0
    print(f"  {'ID':>4}  {'USERNAME':<20} {'EMAIL':<30} CREATED")
    for u in users:
        print(f"  {u.id:>4}  {u.username:<20} {(u.email or '-'):<30} {(u.created_at or '')[:10]}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="useradmin",
        description="Session-based user management web application.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py serve --reload
  python main.py create-user admin
  python main.py list-users
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the web server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=3000, help="Port (default: 3000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    serve.set_defaults(func=_cmd_serve)

    create = sub.add_parser("create-user", help="Create a user account (prompts for the password)")
    create.add_argument("username")
    create.add_argument("--email", default=None)
    create.add_argument("--full-name", default=None)
    create.set_defaults(func=_cmd_create_user)

    list_cmd = sub.add_parser("list-users", help="List user accounts")
    list_cmd.set_defaults(func=_cmd_list_users)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return

    try:
        sys.exit(args.func(args))
    except StoreUnavailableError as exc:
        print(f"  [!] {exc}")
        sys.exit(2)


if __name__ == "__main__":
    main()
