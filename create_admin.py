"""Create the first admin account, or promote an existing one.

Usage:
    python create_admin.py <email> <password> <name>
    python create_admin.py            # prompts for the missing values
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select

from database import session_scope
from models import User, UserRole
from schemas import RegisterIn
from services import UserService


def _prompt(label: str, secret: bool = False) -> str:
    if secret:
        return getpass.getpass(f"{label}: ")
    return input(f"{label}: ")


def create_admin(email: str, password: str, name: str) -> tuple[User, bool]:
    """Return the admin user and whether it was newly created."""
    data = RegisterIn(email=email.strip(), password=password, name=name)
    with session_scope() as session:
        users = UserService(session)
        existing = users.get_by_email(data.email)
        if existing:
            user = users.update_role(existing.id, UserRole.admin)
            return user, False
        return users.register(data, role=UserRole.admin), True


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email", nargs="?")
    parser.add_argument("password", nargs="?")
    parser.add_argument("name", nargs="?")
    parser.add_argument(
        "--yes", action="store_true", help="do not ask before adding another admin"
    )
    args = parser.parse_args(argv)

    if not args.yes:
        with session_scope() as session:
            current = session.scalar(select(User).where(User.role == UserRole.admin))
            if current:
                print(f"An admin already exists: {current.name} <{current.email}>")
                if _prompt("Create another admin? (y/n)").strip().lower() != "y":
                    print("Cancelled.")
                    return 0

    email = args.email or _prompt("Email")
    password = args.password or _prompt("Password (min 6 characters)", secret=True)
    name = args.name or _prompt("Name")

    try:
        user, created = create_admin(email, password, name)
    except ValidationError as exc:
        print(f"Invalid input: {exc.errors()[0]['msg']}", file=sys.stderr)
        return 1

    action = "created" if created else "promoted to admin"
    print(f"Admin {action}: {user.name} <{user.email}>")
    return 0


if __name__ == "__main__":
    sys.exit(main())
