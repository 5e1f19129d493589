#!/usr/bin/env python3
"""
Create the lending tables for the configured database.
Usage:
  python db.py [--reset] [--db-uri sqlite:///library.db]

--reset drops every table first, losing all users, books and borrowings.
"""
import argparse
import sys

from app import create_app
from models import db


def main(argv=None):
    parser = argparse.ArgumentParser(description='Initialize the lending database')
    parser.add_argument('--reset', action='store_true', help='drop existing tables first')
    parser.add_argument('--db-uri', help='optional DB URI to override app config')
    args = parser.parse_args(argv)

    app = create_app({'SQLALCHEMY_DATABASE_URI': args.db_uri} if args.db_uri else None)
    with app.app_context():
        uri = app.config['SQLALCHEMY_DATABASE_URI']
        if args.reset:
            db.drop_all()
            print(f'Dropped all tables ({uri})')
        db.create_all()
        print(f'Initialized database ({uri})')
    return 0


if __name__ == '__main__':
    sys.exit(main())
