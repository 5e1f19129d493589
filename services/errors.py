"""Lending error taxonomy and store constraint translation."""
from __future__ import annotations

import re
from typing import Optional

from sqlalchemy.exc import IntegrityError


class BorrowServiceError(RuntimeError):
    """Base class for borrow/return failures."""

    kind = 'error'
    status_code = 500


class ValidationError(BorrowServiceError):
    kind = 'validation'
    status_code = 400


class NotFoundError(BorrowServiceError):
    kind = 'not_found'
    status_code = 404


class EligibilityError(BorrowServiceError):
    kind = 'eligibility'
    status_code = 403


class AvailabilityError(BorrowServiceError):
    kind = 'availability'
    status_code = 409


class BorrowingLimitError(BorrowServiceError):
    kind = 'limit'
    status_code = 409


class ConflictError(BorrowServiceError):
    kind = 'conflict'
    status_code = 409


FOREIGN_KEY = 'foreign_key'
CHECK = 'check'
UNIQUE = 'unique'
NOT_NULL = 'not_null'

_KIND_LABELS = {
    FOREIGN_KEY: 'foreign key',
    CHECK: 'check',
    UNIQUE: 'unique',
    NOT_NULL: 'not null',
}


class ConstraintViolationError(BorrowServiceError):
    """A store integrity rule rejected a write.

    ``constraint_kind`` is one of ``foreign_key``, ``check``, ``unique`` or
    ``not_null``; ``table``, ``column`` and ``constraint`` are filled in as
    far as the engine reports them.
    """

    kind = 'constraint'
    status_code = 422

    def __init__(
        self,
        constraint_kind: str,
        *,
        table: Optional[str] = None,
        column: Optional[str] = None,
        constraint: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.constraint_kind = constraint_kind
        self.table = table
        self.column = column
        self.constraint = constraint
        self.detail = detail
        super().__init__(self._format())

    def _format(self) -> str:
        label = _KIND_LABELS.get(self.constraint_kind, self.constraint_kind)
        parts = [f'{label} constraint violated']
        if self.constraint:
            parts.append(f'({self.constraint})')
        if self.table and self.column:
            parts.append(f'on {self.table}.{self.column}')
        elif self.column:
            parts.append(f'on {self.column}')
        elif self.table:
            parts.append(f'on {self.table}')
        message = ' '.join(parts)
        if self.constraint_kind == UNIQUE:
            message += ': duplicate value'
        if self.detail:
            message += f' [{self.detail}]'
        return message


# SQLite phrasing first, then PostgreSQL.
_SQLITE_UNIQUE = re.compile(r'UNIQUE constraint failed: (?P<table>\w+)\.(?P<column>\w+)')
_SQLITE_NOT_NULL = re.compile(r'NOT NULL constraint failed: (?P<table>\w+)\.(?P<column>\w+)')
_SQLITE_CHECK = re.compile(r'CHECK constraint failed: (?P<constraint>\w+)')
_SQLITE_FK = re.compile(r'FOREIGN KEY constraint failed')
_PG_UNIQUE = re.compile(r'violates unique constraint "(?P<constraint>[^"]+)"')
_PG_NOT_NULL = re.compile(r'null value in column "(?P<column>[^"]+)"(?: of relation "(?P<table>[^"]+)")?')
_PG_CHECK = re.compile(r'(?:relation "(?P<table>[^"]+)" )?violates check constraint "(?P<constraint>[^"]+)"')
_PG_FK = re.compile(r'on table "(?P<table>[^"]+)" violates foreign key constraint "(?P<constraint>[^"]+)"')
_PG_KEY = re.compile(r'Key \((?P<column>[^)]+)\)')

# column each named check constraint guards
CHECK_COLUMNS = {
    'check_available_copies': 'available_copies',
    'check_total_copies': 'total_copies',
    'check_book_status': 'status',
    'check_publication_year': 'publication_year',
    'check_user_role': 'role',
    'check_user_status': 'status',
    'check_due_date_after_borrow': 'due_date',
    'check_borrowing_status': 'status',
    'check_fine_amount': 'fine_amount',
}
FK_COLUMNS = {
    'fk_borrowings_user_id': 'user_id',
    'fk_borrowings_book_id': 'book_id',
}


def translate_integrity_error(exc: IntegrityError) -> ConstraintViolationError:
    """Map a driver integrity error onto a :class:`ConstraintViolationError`."""
    message = str(exc.orig) if exc.orig is not None else str(exc)

    match = _SQLITE_UNIQUE.search(message)
    if match:
        return ConstraintViolationError(UNIQUE, table=match['table'], column=match['column'])
    match = _SQLITE_NOT_NULL.search(message)
    if match:
        return ConstraintViolationError(NOT_NULL, table=match['table'], column=match['column'])
    match = _SQLITE_CHECK.search(message)
    if match:
        name = match['constraint']
        return ConstraintViolationError(CHECK, column=CHECK_COLUMNS.get(name), constraint=name)
    if _SQLITE_FK.search(message):
        return ConstraintViolationError(FOREIGN_KEY)

    key = _PG_KEY.search(message)
    match = _PG_UNIQUE.search(message)
    if match:
        return ConstraintViolationError(
            UNIQUE, column=key['column'] if key else None, constraint=match['constraint']
        )
    match = _PG_NOT_NULL.search(message)
    if match:
        return ConstraintViolationError(NOT_NULL, table=match['table'], column=match['column'])
    match = _PG_CHECK.search(message)
    if match:
        name = match['constraint']
        return ConstraintViolationError(
            CHECK, table=match['table'], column=CHECK_COLUMNS.get(name), constraint=name
        )
    match = _PG_FK.search(message)
    if match:
        name = match['constraint']
        column = key['column'] if key else FK_COLUMNS.get(name)
        return ConstraintViolationError(FOREIGN_KEY, table=match['table'], column=column, constraint=name)

    return ConstraintViolationError('unknown', detail=message.splitlines()[0] if message else None)
