"""Borrowing lifecycle.

    (member request)  -> Pending --approve--> Active --return--> Completed
                                 --reject---> Rejected
                                 --cancel---> Cancelled
    (admin issue/reserve) ------------------> Active

Every state change is a conditional UPDATE on the expected current status and
is committed together with its inventory change. When two actors race on the
same record, the loser's UPDATE matches no row and it gets NotPending or
NotActive; the inventory is only touched once.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.sql import func

import models
from config import settings
from database import paginate
from errors import LibraryError, NotActive, NotFound, NotOwner, NotPending, RoleError, ValidationError
from inventory import release_copy, reserve_copy
from models import TransactionStatus, TransactionType
from policy import calculate_fine, days_overdue, validate_loan_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of one request."""
    member_id: int
    is_admin: bool = False
    name: str = ""


# --- Helpers ---

def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    return value


def _coerce_type(transaction_type) -> TransactionType:
    try:
        return TransactionType(transaction_type)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {transaction_type}")


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        logger.warning("Member %s tried to %s without admin rights", actor.member_id, action)
        raise RoleError(f"Only admins can {action}")


def _get_book(db: Session, book_id: int) -> models.Book:
    book = db.get(models.Book, book_id)
    if book is None:
        raise NotFound(f"Book {book_id} not found")
    return book


def _get_member(db: Session, member_id: int) -> models.Member:
    member = db.get(models.Member, member_id)
    if member is None:
        raise NotFound(f"Member {member_id} not found")
    return member


def _transition(db: Session, transaction_id: int, expected: TransactionStatus, values: dict) -> bool:
    """Compare-and-swap on the status column. True if this call won."""
    values = dict(values, updated_at=func.now())
    updated = db.query(models.Transaction).filter(
        models.Transaction.id == transaction_id,
        models.Transaction.status == expected
    ).update(values, synchronize_session=False)
    return updated == 1


def get_transaction(db: Session, transaction_id: int) -> models.Transaction:
    tx = db.get(models.Transaction, transaction_id)
    if tx is None:
        raise NotFound(f"Transaction {transaction_id} not found")
    return tx


def with_fine(tx: models.Transaction, as_of=None) -> models.Transaction:
    """Attach the fine accrued so far (read-time only, nothing is stored)."""
    tx.days_overdue = days_overdue(tx.to_date, as_of)
    tx.current_fine = calculate_fine(tx.to_date, as_of)
    return tx


# --- Creation ---

def request_book(db: Session, actor: Actor, book_id: int, from_date, to_date,
                 transaction_type=TransactionType.ISSUED) -> models.Transaction:
    """A member asks for a book. Always lands in Pending, whatever the stock."""
    if actor.is_admin:
        logger.warning("Admin %s tried to file a member request", actor.member_id)
        raise RoleError("Admins cannot request books. Use the Issue/Reserve feature instead.")

    from_date, to_date = _as_date(from_date), _as_date(to_date)
    validate_loan_window(from_date, to_date)
    ttype = _coerce_type(transaction_type)
    book = _get_book(db, book_id)
    member = _get_member(db, actor.member_id)

    tx = models.Transaction(
        book_id=book.id,
        book_name=book.book_name,
        borrower_id=member.id,
        borrower_name=member.full_name,
        transaction_type=ttype,
        status=TransactionStatus.PENDING,
        from_date=from_date,
        to_date=to_date,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)
    logger.info("Member %s requested book %s (transaction %s)", member.id, book.id, tx.id)
    return tx


def create_transaction(db: Session, actor: Actor, book_id: int, borrower_id: int,
                       transaction_type, from_date, to_date) -> models.Transaction:
    """Admin issues or reserves a book directly; the record starts Active."""
    _require_admin(actor, "issue or reserve books")
    from_date, to_date = _as_date(from_date), _as_date(to_date)
    validate_loan_window(from_date, to_date)
    ttype = _coerce_type(transaction_type)
    book = _get_book(db, book_id)
    borrower = _get_member(db, borrower_id)

    takes_copy = ttype == TransactionType.ISSUED
    try:
        if takes_copy:
            reserve_copy(db, book.id)
        tx = models.Transaction(
            book_id=book.id,
            book_name=book.book_name,
            borrower_id=borrower.id,
            borrower_name=borrower.full_name,
            transaction_type=ttype,
            status=TransactionStatus.ACTIVE,
            from_date=from_date,
            to_date=to_date,
            holds_copy=takes_copy,
        )
        db.add(tx)
        db.commit()
    except LibraryError as exc:
        db.rollback()
        logger.warning("Direct %s of book %s refused: %s", ttype.value, book_id, exc.message)
        raise

    db.refresh(tx)
    logger.info("Admin %s created %s transaction %s for member %s",
                actor.member_id, ttype.value, tx.id, borrower.id)
    return tx


# --- Pending resolution ---

def approve(db: Session, actor: Actor, transaction_id: int) -> models.Transaction:
    _require_admin(actor, "approve requests")
    tx = get_transaction(db, transaction_id)
    takes_copy = tx.transaction_type == TransactionType.ISSUED
    book_id = tx.book_id

    try:
        if not _transition(db, transaction_id, TransactionStatus.PENDING,
                           {"status": TransactionStatus.ACTIVE, "holds_copy": takes_copy}):
            raise NotPending(f"Transaction {transaction_id} is not pending")
        if takes_copy:
            reserve_copy(db, book_id)
        db.commit()
    except LibraryError as exc:
        db.rollback()
        logger.warning("Approval of transaction %s failed: %s", transaction_id, exc.message)
        raise

    db.refresh(tx)
    logger.info("Admin %s approved transaction %s", actor.member_id, transaction_id)
    return tx


def reject(db: Session, actor: Actor, transaction_id: int) -> models.Transaction:
    _require_admin(actor, "reject requests")
    tx = get_transaction(db, transaction_id)

    if not _transition(db, transaction_id, TransactionStatus.PENDING,
                       {"status": TransactionStatus.REJECTED}):
        db.rollback()
        logger.warning("Rejection of transaction %s failed: not pending", transaction_id)
        raise NotPending(f"Transaction {transaction_id} is not pending")
    db.commit()

    db.refresh(tx)
    logger.info("Admin %s rejected transaction %s", actor.member_id, transaction_id)
    return tx


def cancel(db: Session, actor: Actor, transaction_id: int) -> models.Transaction:
    tx = get_transaction(db, transaction_id)
    if not actor.is_admin and tx.borrower_id != actor.member_id:
        logger.warning("Member %s tried to cancel transaction %s of member %s",
                       actor.member_id, transaction_id, tx.borrower_id)
        raise NotOwner("You can only cancel your own requests")

    if not _transition(db, transaction_id, TransactionStatus.PENDING,
                       {"status": TransactionStatus.CANCELLED}):
        db.rollback()
        logger.warning("Cancellation of transaction %s failed: not pending", transaction_id)
        raise NotPending(f"Transaction {transaction_id} is not pending")
    db.commit()

    db.refresh(tx)
    logger.info("Member %s cancelled transaction %s", actor.member_id, transaction_id)
    return tx


# --- Return ---

def return_book(db: Session, actor: Actor, transaction_id: int, as_of=None):
    """Close an Active transaction. Returns (transaction, fine)."""
    _require_admin(actor, "process returns")
    tx = get_transaction(db, transaction_id)
    if as_of is None:
        as_of = date.today()
    fine = calculate_fine(tx.to_date, as_of)

    try:
        if not _transition(db, transaction_id, TransactionStatus.ACTIVE,
                           {"status": TransactionStatus.COMPLETED,
                            "return_date": _as_date(as_of),
                            "fine": fine}):
            raise NotActive(f"Transaction {transaction_id} is not active")

        # Read inside the same DB transaction, after winning the swap
        holds_copy, book_id = db.query(
            models.Transaction.holds_copy, models.Transaction.book_id
        ).filter(models.Transaction.id == transaction_id).one()
        if holds_copy:
            if book_id is not None:
                release_copy(db, book_id)
            db.query(models.Transaction).filter(
                models.Transaction.id == transaction_id
            ).update({"holds_copy": False}, synchronize_session=False)
        db.commit()
    except LibraryError as exc:
        db.rollback()
        logger.warning("Return of transaction %s failed: %s", transaction_id, exc.message)
        raise

    db.refresh(tx)
    logger.info("Admin %s closed transaction %s, fine %s", actor.member_id, transaction_id, fine)
    return tx, fine


# --- Queries ---

def list_transactions(db: Session, status=None, borrower_id: Optional[int] = None,
                      page: int = 1, limit: Optional[int] = None, sort_order: str = "desc") -> dict:
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if limit is None:
        limit = settings.default_page_size
    if limit < 1 or limit > settings.max_page_size:
        raise ValidationError(f"limit must be between 1 and {settings.max_page_size}")
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be 'asc' or 'desc'")

    query = db.query(models.Transaction)
    if status is not None:
        try:
            status = TransactionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
        query = query.filter(models.Transaction.status == status)
    if borrower_id is not None:
        query = query.filter(models.Transaction.borrower_id == borrower_id)

    if sort_order == "desc":
        query = query.order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc())
    else:
        query = query.order_by(models.Transaction.created_at.asc(), models.Transaction.id.asc())
    return paginate(query, page, limit)


def list_pending(db: Session, page: int = 1, limit: Optional[int] = None) -> dict:
    """Admin approval queue, newest first."""
    return list_transactions(db, status=TransactionStatus.PENDING, page=page, limit=limit)


def list_active(db: Session, page: int = 1, limit: Optional[int] = None, as_of=None) -> dict:
    """Transactions awaiting return, each with the fine accrued so far."""
    result = list_transactions(db, status=TransactionStatus.ACTIVE, page=page, limit=limit)
    result["items"] = [with_fine(tx, as_of) for tx in result["items"]]
    return result


def overdue_transactions(db: Session, as_of=None, page: int = 1, limit: Optional[int] = None) -> dict:
    """Active transactions past their due date, oldest due first."""
    if as_of is None:
        as_of = date.today()
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if limit is None:
        limit = settings.default_page_size
    if limit < 1 or limit > settings.max_page_size:
        raise ValidationError(f"limit must be between 1 and {settings.max_page_size}")

    query = db.query(models.Transaction).filter(
        models.Transaction.status == TransactionStatus.ACTIVE,
        models.Transaction.to_date < _as_date(as_of)
    ).order_by(models.Transaction.to_date.asc(), models.Transaction.id.asc())

    result = paginate(query, page, limit)
    result["items"] = [{
        "transaction_id": tx.id,
        "book_name": tx.book_name,
        "borrower_id": tx.borrower_id,
        "borrower_name": tx.borrower_name,
        "to_date": tx.to_date,
        "days_overdue": days_overdue(tx.to_date, as_of),
        "fine": calculate_fine(tx.to_date, as_of),
    } for tx in result["items"]]
    return result
