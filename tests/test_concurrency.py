import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from app import create_app
from models import Book, Borrowing, db
from services.borrowing import BorrowingService
from services.errors import BorrowServiceError
from services.store import BookStore, BorrowingStore, UserStore

CONTENDERS = 8


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'lending.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30, 'check_same_thread': False}},
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def _seed(copies):
    users, books = UserStore(), BookStore()
    user_ids = [
        users.create(username=f'racer_{i}', email=f'racer_{i}@library.test').id
        for i in range(CONTENDERS)
    ]
    book_id = books.create(isbn='9789999999999', title='Last Copy', total_copies=copies).id
    db.session.commit()
    # nothing may hold the database while the workers run
    db.session.remove()
    return user_ids, book_id


def _race(app, requests):
    """Runs ``(user_id, book_id)`` borrows at once; returns each outcome kind."""
    service = BorrowingService()
    barrier = threading.Barrier(len(requests))

    def attempt(request):
        user_id, book_id = request
        barrier.wait()
        with app.app_context():
            try:
                service.borrow(user_id, book_id, 14)
                return 'ok'
            except BorrowServiceError as exc:
                return exc.kind

    with ThreadPoolExecutor(max_workers=len(requests)) as pool:
        return list(pool.map(attempt, requests))


def test_exactly_one_borrower_gets_the_last_copy(file_app):
    user_ids, book_id = _seed(copies=1)

    outcomes = _race(file_app, [(user_id, book_id) for user_id in user_ids])

    assert outcomes.count('ok') == 1
    assert outcomes.count('availability') == CONTENDERS - 1
    assert db.session.get(Book, book_id).available_copies == 0
    assert Borrowing.query.filter_by(book_id=book_id).count() == 1


def test_contended_copies_never_go_negative(file_app):
    user_ids, book_id = _seed(copies=3)

    outcomes = _race(file_app, [(user_id, book_id) for user_id in user_ids])

    assert outcomes.count('ok') == 3
    assert outcomes.count('availability') == CONTENDERS - 3
    assert db.session.get(Book, book_id).available_copies == 0
    assert Borrowing.query.filter_by(book_id=book_id, status='borrowed').count() == 3


def test_one_user_racing_for_the_last_loan_slot(file_app):
    users, books = UserStore(), BookStore()
    user_id = users.create(username='greedy', email='greedy@library.test').id
    book_ids = [
        books.create(isbn=f'97888888888{i:02d}', title=f'Shelf {i}', total_copies=1).id
        for i in range(4 + CONTENDERS)
    ]
    db.session.commit()
    db.session.remove()

    service = BorrowingService()
    for book_id in book_ids[:4]:
        service.borrow(user_id, book_id, 14)
    db.session.remove()

    outcomes = _race(file_app, [(user_id, book_id) for book_id in book_ids[4:]])

    assert outcomes.count('ok') == 1
    assert outcomes.count('limit') == CONTENDERS - 1
    assert BorrowingStore().count_active(user_id) == 5
    taken = sum(1 for book_id in book_ids if db.session.get(Book, book_id).available_copies == 0)
    assert taken == 5
