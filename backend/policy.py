import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from config import settings
from errors import ValidationError

DateLike = Union[date, datetime]

ONE_DAY = timedelta(days=1)


def _naive_utc(value: DateLike) -> DateLike:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _align(a: DateLike, b: DateLike):
    """Bring a date/datetime pair onto the same type so they can be subtracted.

    Aware datetimes are converted to naive UTC first.
    """
    a, b = _naive_utc(a), _naive_utc(b)
    if isinstance(a, datetime) and not isinstance(b, datetime):
        b = datetime.combine(b, datetime.min.time())
    elif isinstance(b, datetime) and not isinstance(a, datetime):
        a = datetime.combine(a, datetime.min.time())
    return a, b


def days_overdue(due_date: DateLike, as_of: Optional[DateLike] = None) -> int:
    """Whole days past the due date (floored), or 0 when not overdue."""
    if as_of is None:
        as_of = date.today()
    as_of, due_date = _align(as_of, due_date)
    days = (as_of - due_date) // ONE_DAY
    return days if days > 0 else 0


def calculate_fine(due_date: DateLike, as_of: Optional[DateLike] = None,
                   rate: Optional[int] = None) -> int:
    """Overdue fine: days overdue times the daily rate (10 per day by default)."""
    if rate is None:
        rate = settings.fine_per_day
    return days_overdue(due_date, as_of) * rate


def calculate_duration(from_date: DateLike, to_date: DateLike) -> int:
    """Number of days between the two dates, rounded up. Never negative."""
    to_date, from_date = _align(to_date, from_date)
    days = math.ceil((to_date - from_date) / ONE_DAY)
    return days if days > 0 else 0


def validate_loan_window(from_date: Optional[DateLike], to_date: Optional[DateLike]) -> int:
    """Check a requested borrowing window and return its duration in days.

    Raises ValidationError naming the first rule that fails:
    both dates present, to-date after from-date, and the duration
    inside the configured bounds (1 to 90 days by default).
    """
    if from_date is None or to_date is None:
        raise ValidationError("Both from_date and to_date are required")

    aligned_to, aligned_from = _align(to_date, from_date)
    if aligned_to <= aligned_from:
        raise ValidationError("to_date must be after from_date")

    duration = calculate_duration(from_date, to_date)
    if duration < settings.min_loan_days:
        raise ValidationError(f"Duration must be at least {settings.min_loan_days} day(s)")
    if duration > settings.max_loan_days:
        raise ValidationError(f"Maximum duration is {settings.max_loan_days} days")
    return duration
