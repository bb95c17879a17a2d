from datetime import date

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from errors import NotFound
from lifecycle import with_fine
from models import TransactionStatus, TransactionType


def get_member_view(db: Session, member_id: int, as_of=None) -> dict:
    """
    Everything the account page shows for one member.

    Completed records form the history. Rejected and cancelled ones are kept
    apart in `declined` so the history only lists books actually borrowed.
    Active issued records carry the fine accrued up to `as_of`.
    """
    member = db.get(models.Member, member_id)
    if member is None:
        raise NotFound(f"Member {member_id} not found")

    transactions = db.query(models.Transaction).filter(
        models.Transaction.borrower_id == member_id
    ).order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc()).all()

    pending, active_issued, active_reserved, history, declined = [], [], [], [], []
    for tx in transactions:
        if tx.status == TransactionStatus.PENDING:
            pending.append(tx)
        elif tx.status == TransactionStatus.ACTIVE:
            if tx.transaction_type == TransactionType.ISSUED:
                active_issued.append(with_fine(tx, as_of))
            else:
                active_reserved.append(tx)
        elif tx.status == TransactionStatus.COMPLETED:
            history.append(tx)
        else:
            declined.append(tx)

    counts = {
        "pending": len(pending),
        "active": len(active_issued) + len(active_reserved),
        "issued": len(active_issued),
        "reserved": len(active_reserved),
        "history": len(history),
        "declined": len(declined),
    }

    return {
        "member": member,
        "pending": pending,
        "active_issued": active_issued,
        "active_reserved": active_reserved,
        "history": history,
        "declined": declined,
        "points": member.points,
        "counts": counts,
        "total_fine": sum(tx.current_fine for tx in active_issued),
    }


def dashboard_stats(db: Session, as_of=None) -> dict:
    """Admin dashboard counters."""
    if as_of is None:
        as_of = date.today()

    total_copies, available_copies = db.query(
        func.coalesce(func.sum(models.Book.total_copies), 0),
        func.coalesce(func.sum(models.Book.available_copies), 0)
    ).one()

    pending = db.query(models.Transaction.borrower_id, models.Transaction.created_at).filter(
        models.Transaction.status == TransactionStatus.PENDING
    ).all()
    requested_today = [row for row in pending if row.created_at and row.created_at.date() == as_of]

    active_q = db.query(models.Transaction).filter(models.Transaction.status == TransactionStatus.ACTIVE)

    return {
        "total_titles": db.query(models.Book).count(),
        "total_copies": int(total_copies),
        "available_copies": int(available_copies),
        "total_members": db.query(models.Member).filter(models.Member.is_admin.is_(False)).count(),
        "pending_requests": len(pending),
        "pending_requested_today": len(requested_today),
        "pending_borrowers": len({row.borrower_id for row in pending}),
        "active_transactions": active_q.count(),
        "overdue_transactions": active_q.filter(models.Transaction.to_date < as_of).count(),
    }
