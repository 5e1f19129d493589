"""Typed data access for users, books and borrowings.

Writes are flushed, never committed: the caller owns the transaction. An
integrity failure rolls the session (or the enclosing savepoint) back and
surfaces as :class:`~services.errors.ConstraintViolationError`.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import BEGIN_IMMEDIATE, Book, Borrowing, User, db, utcnow
from services.errors import FOREIGN_KEY, ConstraintViolationError, translate_integrity_error


def _has_pending(session) -> bool:
    return bool(session.new or session.dirty or session.deleted)


@contextmanager
def unit_of_work():
    """Commit on success, roll back on error.

    A transaction left open with nothing pending (reads, or writes already
    flushed) is committed first and the block commits on its own. Only
    when the session holds unflushed changes does the block run inside a
    savepoint, leaving the commit to their owner.
    """
    session = db.session()
    if session.in_transaction() and not _has_pending(session):
        session.commit()
    if session.in_transaction():
        with session.begin_nested():
            yield
    else:
        with session.begin():
            session.connection(execution_options={BEGIN_IMMEDIATE: True})
            yield


def _rollback_failed_write() -> None:
    session = db.session()
    # inside a savepoint, leaving the block rolls back just that savepoint
    if not session.in_nested_transaction():
        session.rollback()


def _flush() -> None:
    try:
        db.session.flush()
    except IntegrityError as exc:
        _rollback_failed_write()
        raise translate_integrity_error(exc) from exc


def _execute(stmt):
    try:
        return db.session.execute(stmt)
    except IntegrityError as exc:
        _rollback_failed_write()
        raise translate_integrity_error(exc) from exc


def _apply(obj, changes: dict, allowed) -> None:
    for key, value in changes.items():
        if key not in allowed:
            raise TypeError(f'{type(obj).__name__} has no writable field {key!r}')
        setattr(obj, key, value)


class UserStore:
    FIELDS = ('username', 'email', 'full_name', 'phone', 'role', 'status')

    def create(self, **fields) -> User:
        user = User()
        _apply(user, fields, self.FIELDS)
        db.session.add(user)
        _flush()
        return user

    def find_by_id(self, user_id: int, *, for_update: bool = False) -> Optional[User]:
        return db.session.get(User, user_id, with_for_update=for_update or None, populate_existing=for_update)

    def find_by_username(self, username: str) -> Optional[User]:
        return db.session.scalars(select(User).filter_by(username=username)).first()

    def find_by_email(self, email: str) -> Optional[User]:
        return db.session.scalars(select(User).filter_by(email=email)).first()

    def find_all(self) -> List[User]:
        return list(db.session.scalars(select(User).order_by(User.id)))

    def update(self, user: User, **changes) -> User:
        _apply(user, changes, self.FIELDS)
        _flush()
        return user

    def delete(self, user_id: int) -> bool:
        user = db.session.get(User, user_id)
        if not user:
            return False
        # Same effect as ON DELETE CASCADE, for engines that lack it.
        _execute(delete(Borrowing).where(Borrowing.user_id == user_id))
        db.session.expire(user, ['borrowings'])
        db.session.delete(user)
        _flush()
        return True


class BookStore:
    FIELDS = (
        'isbn', 'title', 'author_id', 'publisher_id', 'category_id', 'publication_year',
        'pages', 'language', 'description', 'total_copies', 'available_copies', 'price',
        'location', 'status',
    )

    def create(self, **fields) -> Book:
        book = Book()
        _apply(book, fields, self.FIELDS)
        if book.available_copies is None and book.total_copies is not None:
            book.available_copies = book.total_copies
        db.session.add(book)
        _flush()
        return book

    def find_by_id(self, book_id: int, *, for_update: bool = False) -> Optional[Book]:
        return db.session.get(Book, book_id, with_for_update=for_update or None, populate_existing=for_update)

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        return db.session.scalars(select(Book).filter_by(isbn=isbn)).first()

    def find_all(self) -> List[Book]:
        return list(db.session.scalars(select(Book).order_by(Book.title)))

    def update(self, book: Book, **changes) -> Book:
        _apply(book, changes, self.FIELDS)
        _flush()
        return book

    def update_available_copies(self, book_id: int, copies: int) -> bool:
        result = _execute(
            update(Book).where(Book.id == book_id).values(available_copies=copies)
        )
        return result.rowcount == 1

    def decrement_available(self, book_id: int) -> bool:
        """Take one copy if any is left; ``False`` when none was.

        A single conditional UPDATE, so two callers racing for the last copy
        cannot both see a row change.
        """
        result = _execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1)
        )
        return result.rowcount == 1

    def increment_available(self, book_id: int) -> bool:
        result = _execute(
            update(Book)
            .where(Book.id == book_id)
            .values(available_copies=Book.available_copies + 1)
        )
        return result.rowcount == 1

    def delete(self, book_id: int) -> bool:
        book = db.session.get(Book, book_id)
        if not book:
            return False
        referenced = db.session.scalar(
            select(func.count(Borrowing.id)).where(Borrowing.book_id == book_id)
        )
        if referenced:
            raise ConstraintViolationError(FOREIGN_KEY, table='borrowings', column='book_id')
        db.session.delete(book)
        _flush()
        return True


class BorrowingStore:
    FIELDS = ('user_id', 'book_id', 'borrow_date', 'due_date', 'return_date', 'status', 'fine_amount')

    def create(self, **fields) -> Borrowing:
        # SQLite does not say which reference failed, so check both here.
        for column, model in (('user_id', User), ('book_id', Book)):
            ref = fields.get(column)
            if ref is not None and db.session.get(model, ref) is None:
                raise ConstraintViolationError(FOREIGN_KEY, table='borrowings', column=column)
        borrowing = Borrowing()
        _apply(borrowing, fields, self.FIELDS)
        db.session.add(borrowing)
        _flush()
        return borrowing

    def find_by_id(self, borrowing_id: int, *, for_update: bool = False) -> Optional[Borrowing]:
        return db.session.get(
            Borrowing, borrowing_id, with_for_update=for_update or None, populate_existing=for_update
        )

    def find_by_user_id(self, user_id: int) -> List[Borrowing]:
        stmt = (
            select(Borrowing)
            .filter_by(user_id=user_id)
            .order_by(Borrowing.borrow_date.desc(), Borrowing.id.desc())
        )
        return list(db.session.scalars(stmt))

    def count_active(self, user_id: int) -> int:
        return db.session.scalar(
            select(func.count(Borrowing.id)).where(
                Borrowing.user_id == user_id, Borrowing.status == 'borrowed'
            )
        )

    def find_overdue(self, at=None) -> List[Borrowing]:
        stmt = (
            select(Borrowing)
            .where(Borrowing.status.in_(('borrowed', 'overdue')), Borrowing.due_date < (at or utcnow()))
            .order_by(Borrowing.due_date)
        )
        return list(db.session.scalars(stmt))

    def update(self, borrowing: Borrowing, **changes) -> Borrowing:
        _apply(borrowing, changes, self.FIELDS)
        _flush()
        return borrowing

    def delete(self, borrowing_id: int) -> bool:
        borrowing = db.session.get(Borrowing, borrowing_id)
        if not borrowing:
            return False
        db.session.delete(borrowing)
        _flush()
        return True

    def delete_many(self, borrowing_ids: Iterable[int]) -> List[int]:
        """Best-effort delete; returns the ids that could not be removed."""
        failed = []
        for borrowing_id in borrowing_ids:
            borrowing = db.session.get(Borrowing, borrowing_id)
            if not borrowing:
                current_app.logger.warning('Could not delete borrowing %s: not found', borrowing_id)
                failed.append(borrowing_id)
                continue
            try:
                with db.session.begin_nested():
                    db.session.delete(borrowing)
            except SQLAlchemyError as exc:
                current_app.logger.warning('Could not delete borrowing %s: %s', borrowing_id, exc)
                failed.append(borrowing_id)
        return failed
