#!/usr/bin/env python3
"""
Create or promote a staff user (admin or librarian) for the lending service.
Usage:
  python create_admin.py --username admin --email admin@library.test

This script must be run from the project root and will use the app's SQLAlchemy
configuration. It creates the user if missing, otherwise sets the requested
staff role and reactivates the account.
"""
import argparse
import sys

# Import application factory
from app import create_app
from models import db
from services.errors import BorrowServiceError
from services.store import UserStore, unit_of_work

STAFF_ROLES = ('admin', 'librarian')


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create or promote a staff user')
    parser.add_argument('--username', '-u', required=True, help='staff username')
    parser.add_argument('--email', '-e', required=True, help='staff email (used when creating)')
    parser.add_argument('--full-name', help='display name')
    parser.add_argument('--role', choices=STAFF_ROLES, default='admin', help='staff role (default: admin)')
    parser.add_argument('--db-uri', help='optional DB URI to override app config')
    args = parser.parse_args(argv)

    config = {}
    if args.db_uri:
        config['SQLALCHEMY_DATABASE_URI'] = args.db_uri

    app = create_app(config)
    users = UserStore()
    with app.app_context():
        db.create_all()
        with unit_of_work():
            user = users.find_by_username(args.username)
            if not user:
                users.create(
                    username=args.username,
                    email=args.email,
                    full_name=args.full_name,
                    role=args.role,
                    status='active',
                )
                created = True
            else:
                users.update(user, role=args.role, status='active')
                created = False
        if created:
            print(f"Created new {args.role} user: {args.username}")
        else:
            print(f"Updated existing user '{args.username}' to {args.role}")
        return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except BorrowServiceError as e:
        print('Error:', e)
        sys.exit(1)
