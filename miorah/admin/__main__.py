from __future__ import annotations

import argparse
import getpass
import sys

from miorah.admin.tasks import add_default_categories, admin_token, create_admin, make_admin
from miorah.db.session import get_sessionmaker


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m miorah.admin", description="Miorah Collections admin tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an admin account (or promote an existing one)")
    create.add_argument("--email", required=True)
    create.add_argument("--username", required=True)
    create.add_argument("--firstname", default="Admin")
    create.add_argument("--lastname", default="User")
    create.add_argument("--password", default=None, help="Prompted for when omitted")

    promote = sub.add_parser("make-admin", help="Grant admin rights to an existing user")
    promote.add_argument("identifier", help="Email address or username")

    sub.add_parser("add-categories", help="Seed the default jewellery categories")

    token = sub.add_parser("token", help="Print a session token for an admin")
    token.add_argument("identifier", help="Email address or username")

    args = parser.parse_args(argv)

    with get_sessionmaker()() as db:
        if args.command == "create-admin":
            password = args.password or getpass.getpass("Password: ")
            user, created = create_admin(db, args.email, args.username, password, args.firstname, args.lastname)
            print(f"{'Created' if created else 'Promoted'} admin {user.username} ({user.email})")
        elif args.command == "make-admin":
            user = make_admin(db, args.identifier)
            if user is None:
                print(f"No user found for {args.identifier}", file=sys.stderr)
                return 1
            print(f"{user.username} is now an admin")
        elif args.command == "add-categories":
            added = add_default_categories(db)
            print(f"Added {len(added)} categories: {', '.join(added) or '-'}")
        elif args.command == "token":
            try:
                print(admin_token(db, args.identifier))
            except ValueError as exc:
                print(str(exc), file=sys.stderr)
                return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
