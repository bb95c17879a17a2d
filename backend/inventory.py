"""Copy inventory.

Both helpers issue a single conditional UPDATE and never commit. They are
meant to run inside the lifecycle's database transaction so the copy count
and the transaction status are committed (or rolled back) together.
"""
import logging

from sqlalchemy.orm import Session

import models
from errors import NotFound, OutOfStock

logger = logging.getLogger(__name__)


def reserve_copy(db: Session, book_id: int) -> None:
    """Take one copy off the shelf. Raises OutOfStock when none is available."""
    updated = db.query(models.Book).filter(
        models.Book.id == book_id,
        models.Book.available_copies > 0
    ).update(
        {models.Book.available_copies: models.Book.available_copies - 1},
        synchronize_session=False
    )
    if updated:
        return

    if db.query(models.Book.id).filter(models.Book.id == book_id).first() is None:
        raise NotFound(f"Book {book_id} not found")
    raise OutOfStock("Book not available for issue")


def release_copy(db: Session, book_id: int) -> bool:
    """Put one copy back, never above the book's total. Returns False when capped."""
    updated = db.query(models.Book).filter(
        models.Book.id == book_id,
        models.Book.available_copies < models.Book.total_copies
    ).update(
        {models.Book.available_copies: models.Book.available_copies + 1},
        synchronize_session=False
    )
    if not updated:
        logger.warning("Copy release for book %s skipped: already at total copies", book_id)
        return False
    return True
