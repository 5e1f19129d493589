"""Borrowing domain service logic."""
from __future__ import annotations

import datetime
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import Borrowing, utcnow
from services.errors import (
    AvailabilityError,
    BorrowingLimitError,
    BorrowServiceError,
    ConflictError,
    ConstraintViolationError,
    EligibilityError,
    NotFoundError,
    ValidationError,
    translate_integrity_error,
)
from services.store import BookStore, BorrowingStore, UserStore, unit_of_work

RETURNABLE_STATUSES = ('borrowed', 'overdue')


def _require_positive_int(value, name: str) -> int:
    if value is None:
        raise ValidationError(f'{name} is required')
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{name} must be an integer')
    if value <= 0:
        raise ValidationError(f'{name} must be a positive integer')
    return value


class BorrowingService:
    """Borrow, return and fine workflows, each run as one unit of work.

    Every precondition is re-read inside the transaction that performs the
    writes. The copy count only ever moves through a conditional UPDATE, so
    callers racing for the last copy get :class:`AvailabilityError` rather
    than a negative count. Failed calls are never retried here.
    """

    def __init__(
        self,
        users: Optional[UserStore] = None,
        books: Optional[BookStore] = None,
        borrowings: Optional[BorrowingStore] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self.users = users or UserStore()
        self.books = books or BookStore()
        self.borrowings = borrowings or BorrowingStore()
        self._clock = clock or utcnow

    @contextmanager
    def _transaction(self, action: str):
        try:
            with unit_of_work():
                yield
        except ConstraintViolationError as exc:
            current_app.logger.warning('%s rejected by store: %s', action, exc)
            raise
        except BorrowServiceError:
            raise
        except IntegrityError as exc:
            error = translate_integrity_error(exc)
            current_app.logger.warning('%s rejected by store: %s', action, error)
            raise error from exc
        except SQLAlchemyError as exc:
            current_app.logger.exception('%s transaction failed: %s', action, exc)
            raise BorrowServiceError(f'{action} failed, please try again later') from exc

    def _config(self, key: str, default):
        return current_app.config.get(key, default)

    def borrow(self, user_id: int, book_id: int, loan_days: Optional[int] = None) -> Borrowing:
        _require_positive_int(user_id, 'user_id')
        _require_positive_int(book_id, 'book_id')
        if loan_days is None:
            loan_days = self._config('DEFAULT_LOAN_DAYS', 14)
        _require_positive_int(loan_days, 'loan_days')
        limit = self._config('MAX_ACTIVE_BORROWINGS', 5)

        with self._transaction('Borrow'):
            user = self.users.find_by_id(user_id, for_update=True)
            if not user:
                raise NotFoundError(f'user {user_id} not found')
            if user.status != 'active':
                raise EligibilityError(f'user not active (status: {user.status})')

            book = self.books.find_by_id(book_id, for_update=True)
            if not book:
                raise NotFoundError(f'book {book_id} not found')
            if book.available_copies <= 0:
                raise AvailabilityError(f'no copies available for book {book_id}')

            if self.borrowings.count_active(user.id) >= limit:
                raise BorrowingLimitError(f'borrowing limit reached ({limit} active loans)')

            if not self.books.decrement_available(book.id):
                raise AvailabilityError(f'no copies available for book {book_id}')

            now = self._clock()
            borrowing = self.borrowings.create(
                user_id=user.id,
                book_id=book.id,
                borrow_date=now,
                due_date=now + datetime.timedelta(days=loan_days),
                status='borrowed',
            )
            borrowing_id, due_date = borrowing.id, borrowing.due_date
        current_app.logger.info(
            'User %s borrowed book %s (borrowing %s, due %s)',
            user_id, book_id, borrowing_id, due_date.isoformat(),
        )
        return borrowing

    def return_book(self, borrowing_id: int) -> bool:
        _require_positive_int(borrowing_id, 'borrowing_id')

        with self._transaction('Return'):
            borrowing = self.borrowings.find_by_id(borrowing_id, for_update=True)
            if not borrowing:
                raise NotFoundError(f'borrowing {borrowing_id} not found')
            if borrowing.status == 'returned':
                raise ConflictError(f'borrowing {borrowing_id} already returned')
            if borrowing.status not in RETURNABLE_STATUSES:
                raise ConflictError(f'borrowing {borrowing_id} cannot be returned from status {borrowing.status}')

            now = self._clock()
            fine = self._fine_for(borrowing, now)
            self.borrowings.update(
                borrowing,
                return_date=now,
                status='returned',
                fine_amount=fine,
            )
            if not self.books.increment_available(borrowing.book_id):
                raise NotFoundError(f'book {borrowing.book_id} not found')
        current_app.logger.info('Borrowing %s returned (fine %s)', borrowing_id, fine)
        return True

    def calculate_fine(self, borrowing_id: int) -> Decimal:
        _require_positive_int(borrowing_id, 'borrowing_id')
        borrowing = self.borrowings.find_by_id(borrowing_id)
        if not borrowing:
            raise NotFoundError(f'borrowing {borrowing_id} not found')
        return self._fine_for(borrowing, self._clock())

    def _fine_for(self, borrowing: Borrowing, at: datetime.datetime) -> Decimal:
        quantum = Decimal(str(self._config('FINE_QUANTUM', '1')))
        effective = borrowing.return_date or at
        overdue_days = max(0, (effective - borrowing.due_date).days)
        if overdue_days == 0:
            return Decimal(0).quantize(quantum)
        rate = Decimal(str(self._config('DAILY_FINE_RATE', '1000')))
        return (rate * overdue_days).quantize(quantum, rounding=ROUND_HALF_UP)

    def user_borrowings(self, user_id: int) -> List[Borrowing]:
        _require_positive_int(user_id, 'user_id')
        if not self.users.find_by_id(user_id):
            raise NotFoundError(f'user {user_id} not found')
        return self.borrowings.find_by_user_id(user_id)

    def overdue_borrowings(self) -> List[Borrowing]:
        return self.borrowings.find_overdue(self._clock())

    def purge_borrowings(self, borrowing_ids: Iterable[int]) -> List[int]:
        """Administrative cleanup; returns the ids that could not be deleted."""
        with self._transaction('Purge'):
            failed = self.borrowings.delete_many(borrowing_ids)
        if failed:
            current_app.logger.warning('Purge left %d borrowing(s) in place: %s', len(failed), failed)
        return failed
