import datetime
import sqlite3
from datetime import timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import CheckConstraint, event
from sqlalchemy.engine import Engine
from sqlalchemy.types import DateTime, TypeDecorator

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()

USER_ROLES = ('member', 'admin', 'librarian')
USER_STATUSES = ('active', 'inactive', 'suspended')
BOOK_STATUSES = ('available', 'unavailable', 'retired')
BORROWING_STATUSES = ('borrowed', 'returned', 'overdue')

MIN_PUBLICATION_YEAR = 1000
MAX_PUBLICATION_YEAR = 2100

# Connection execution option marking a write transaction.
BEGIN_IMMEDIATE = 'sqlite_begin_immediate'


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(timezone.utc)


def _one_of(column: str, values) -> str:
    quoted = ', '.join(f"'{v}'" for v in values)
    return f'{column} IN ({quoted})'


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back timezone-aware UTC.

    SQLite keeps no offset, so values read back would otherwise be naive and
    refuse to compare with ``utcnow()``.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


@event.listens_for(Engine, 'connect')
def _configure_sqlite(dbapi_connection, connection_record):
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    # Let SQLAlchemy emit BEGIN itself (see _begin_sqlite).
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


@event.listens_for(Engine, 'begin')
def _begin_sqlite(conn):
    if conn.dialect.name != 'sqlite':
        return
    # Writers take the lock up front so they queue on the busy timeout
    # instead of deadlocking on a shared -> reserved lock upgrade.
    if conn.get_execution_options().get(BEGIN_IMMEDIATE):
        conn.exec_driver_sql('BEGIN IMMEDIATE')
    else:
        conn.exec_driver_sql('BEGIN')


class TimestampMixin:
    created_at = db.Column(UTCDateTime, nullable=False, default=utcnow)
    # Refreshed on every UPDATE, including bulk update() statements.
    updated_at = db.Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class User(TimestampMixin, db.Model):
    __tablename__ = 'users'
    __table_args__ = (
        CheckConstraint(_one_of('role', USER_ROLES), name='check_user_role'),
        CheckConstraint(_one_of('status', USER_STATUSES), name='check_user_status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    full_name = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    role = db.Column(db.String(16), nullable=False, default='member')
    status = db.Column(db.String(16), nullable=False, default='active')

    borrowings = db.relationship(
        'Borrowing',
        back_populates='user',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'full_name': self.full_name,
            'phone': self.phone,
            'role': self.role,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class Book(TimestampMixin, db.Model):
    __tablename__ = 'books'
    __table_args__ = (
        CheckConstraint(
            'available_copies >= 0 AND available_copies <= total_copies',
            name='check_available_copies',
        ),
        CheckConstraint('total_copies >= 0', name='check_total_copies'),
        CheckConstraint(_one_of('status', BOOK_STATUSES), name='check_book_status'),
        CheckConstraint(
            'publication_year IS NULL OR '
            f'(publication_year >= {MIN_PUBLICATION_YEAR} AND publication_year <= {MAX_PUBLICATION_YEAR})',
            name='check_publication_year',
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    isbn = db.Column(db.String(20), unique=True, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    # catalogue references; authors/publishers/categories live elsewhere
    author_id = db.Column(db.Integer, nullable=True)
    publisher_id = db.Column(db.Integer, nullable=True)
    category_id = db.Column(db.Integer, nullable=True)
    publication_year = db.Column(db.Integer, nullable=True)
    pages = db.Column(db.Integer, nullable=True)
    language = db.Column(db.String(40), nullable=True)
    description = db.Column(db.Text, nullable=True)
    total_copies = db.Column(db.Integer, nullable=False, default=1)
    available_copies = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=True)
    location = db.Column(db.String(80), nullable=True)
    status = db.Column(db.String(16), nullable=False, default='available')

    # leave dependent rows alone; the FK refuses the delete
    borrowings = db.relationship('Borrowing', back_populates='book', passive_deletes='all')

    def to_dict(self):
        return {
            'id': self.id,
            'isbn': self.isbn,
            'title': self.title,
            'author_id': self.author_id,
            'publisher_id': self.publisher_id,
            'category_id': self.category_id,
            'publication_year': self.publication_year,
            'pages': self.pages,
            'language': self.language,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'price': str(self.price) if self.price is not None else None,
            'location': self.location,
            'status': self.status,
        }


class Borrowing(TimestampMixin, db.Model):
    __tablename__ = 'borrowings'
    __table_args__ = (
        CheckConstraint('due_date > borrow_date', name='check_due_date_after_borrow'),
        CheckConstraint(_one_of('status', BORROWING_STATUSES), name='check_borrowing_status'),
        CheckConstraint('fine_amount IS NULL OR fine_amount >= 0', name='check_fine_amount'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id', ondelete='CASCADE', name='fk_borrowings_user_id'),
        nullable=False,
        index=True,
    )
    book_id = db.Column(
        db.Integer,
        db.ForeignKey('books.id', name='fk_borrowings_book_id'),
        nullable=False,
        index=True,
    )
    borrow_date = db.Column(UTCDateTime, nullable=False, default=utcnow)
    due_date = db.Column(UTCDateTime, nullable=False)
    return_date = db.Column(UTCDateTime, nullable=True)
    status = db.Column(db.String(16), nullable=False, default='borrowed', index=True)
    fine_amount = db.Column(db.Numeric(12, 2), nullable=True)

    user = db.relationship('User', back_populates='borrowings')
    book = db.relationship('Book', back_populates='borrowings')

    def is_overdue(self, at=None) -> bool:
        if self.status == 'returned':
            return False
        return (at or utcnow()) > self.due_date

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'borrow_date': self.borrow_date.isoformat() if self.borrow_date else None,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'return_date': self.return_date.isoformat() if self.return_date else None,
            'status': self.status,
            'overdue': self.is_overdue(),
            'fine_amount': str(self.fine_amount) if self.fine_amount is not None else None,
        }
