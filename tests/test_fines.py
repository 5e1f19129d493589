import datetime
from decimal import Decimal

import pytest

from models import Borrowing, db, utcnow
from services.errors import NotFoundError


def _backdated_borrowing(borrowings, user_id, book_id, *, borrowed_days_ago, due_days_ago):
    now = utcnow()
    borrowing = borrowings.create(
        user_id=user_id,
        book_id=book_id,
        borrow_date=now - datetime.timedelta(days=borrowed_days_ago),
        due_date=now - datetime.timedelta(days=due_days_ago),
        status='borrowed',
    )
    db.session.commit()
    return borrowing.id


def test_fine_for_loan_five_days_overdue(app, service, borrowings, make_user, make_book, clock):
    borrowing_id = _backdated_borrowing(
        borrowings, make_user(), make_book(), borrowed_days_ago=10, due_days_ago=5
    )
    clock.now = utcnow()

    fine = service.calculate_fine(borrowing_id)

    assert fine == 5 * app.config['DAILY_FINE_RATE']
    assert fine == Decimal('5000')


def test_no_fine_before_due_date(service, make_user, make_book):
    borrowing = service.borrow(make_user(), make_book(), 14)
    assert service.calculate_fine(borrowing.id) == 0


def test_partial_day_is_not_charged(service, make_user, make_book, clock):
    borrowing = service.borrow(make_user(), make_book(), 14)
    clock.advance(days=14, hours=23)
    assert service.calculate_fine(borrowing.id) == 0


def test_fine_grows_with_time_for_open_loan(service, make_user, make_book, clock):
    borrowing_id = service.borrow(make_user(), make_book(), 7).id
    seen = []
    for _ in range(4):
        clock.advance(days=3)
        seen.append(service.calculate_fine(borrowing_id))

    assert seen == sorted(seen)
    assert seen[0] == 0
    assert seen[-1] == Decimal('5000')


def test_calculate_fine_has_no_side_effect(service, make_user, make_book, clock):
    borrowing_id = service.borrow(make_user(), make_book(), 1).id
    clock.advance(days=4)

    assert service.calculate_fine(borrowing_id) == Decimal('3000')
    db.session.expire_all()
    assert db.session.get(Borrowing, borrowing_id).fine_amount is None


def test_return_persists_fine_and_freezes_it(service, make_user, make_book, clock):
    borrowing_id = service.borrow(make_user(), make_book(), 14).id
    clock.advance(days=16, hours=1)

    service.return_book(borrowing_id)
    db.session.expire_all()
    assert db.session.get(Borrowing, borrowing_id).fine_amount == Decimal('2000')

    # returned loans are charged up to the return date only
    clock.advance(days=30)
    assert service.calculate_fine(borrowing_id) == Decimal('2000')


def test_fine_rate_and_rounding_come_from_config(app, service, make_user, make_book, clock):
    app.config['DAILY_FINE_RATE'] = Decimal('0.125')
    app.config['FINE_QUANTUM'] = Decimal('0.01')
    borrowing_id = service.borrow(make_user(), make_book(), 1).id
    clock.advance(days=4)

    # 3 days * 0.125 = 0.375, half-up to the cent
    assert service.calculate_fine(borrowing_id) == Decimal('0.38')


def test_fine_for_unknown_borrowing(service):
    with pytest.raises(NotFoundError):
        service.calculate_fine(404)
