"""Service layer package for encapsulating business logic."""

from .errors import (  # noqa: F401
    AvailabilityError,
    BorrowingLimitError,
    BorrowServiceError,
    ConflictError,
    ConstraintViolationError,
    EligibilityError,
    NotFoundError,
    ValidationError,
)
from .store import BookStore, BorrowingStore, UserStore, unit_of_work  # noqa: F401
from .borrowing import BorrowingService  # noqa: F401
