import datetime
import itertools

import pytest
from sqlalchemy import func, select

from app import create_app
from models import Book, Borrowing, db, utcnow
from services.borrowing import BorrowingService
from services.store import BookStore, BorrowingStore, UserStore

_seq = itertools.count(1)


class FrozenClock:
    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += datetime.timedelta(**delta)


@pytest.fixture
def app(tmp_path):
    # a file, so checks on a second connection see only committed rows
    app = create_app({'TESTING': True, 'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'library.db'}"})
    with app.app_context():
        # create_app already initializes the db (db.init_app). Just create tables for the test DB.
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    return UserStore()


@pytest.fixture
def books(app):
    return BookStore()


@pytest.fixture
def borrowings(app):
    return BorrowingStore()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def service(app, clock):
    return BorrowingService(clock=clock)


@pytest.fixture
def make_user(users):
    """Committed user; returns its id."""
    def factory(**overrides):
        n = next(_seq)
        fields = {
            'username': f'member_{n}',
            'email': f'member_{n}@library.test',
            'full_name': f'Member {n}',
            'phone': '0812000000',
            'role': 'member',
            'status': 'active',
        }
        fields.update(overrides)
        user_id = users.create(**fields).id
        db.session.commit()
        return user_id
    return factory


@pytest.fixture
def make_book(books):
    """Committed book; returns its id."""
    def factory(**overrides):
        n = next(_seq)
        fields = {
            'isbn': f'978{n:010d}',
            'title': f'Test Book {n}',
            'author_id': 1,
            'publication_year': 2023,
            'pages': 300,
            'language': 'Indonesia',
            'total_copies': 5,
            'available_copies': 5,
            'price': 85000,
            'location': 'Shelf A1',
            'status': 'available',
        }
        fields.update(overrides)
        book_id = books.create(**fields).id
        db.session.commit()
        return book_id
    return factory


@pytest.fixture
def stored(app):
    """Runs a scalar query on its own connection: committed state only."""
    def run(stmt):
        with db.engine.connect() as conn:
            return conn.scalar(stmt)
    return run


@pytest.fixture
def copies(stored):
    def read(book_id):
        return stored(select(Book.available_copies).where(Book.id == book_id))
    return read


@pytest.fixture
def active_loans(stored):
    def count(user_id):
        return stored(
            select(func.count(Borrowing.id)).where(
                Borrowing.user_id == user_id, Borrowing.status == 'borrowed'
            )
        )
    return count
