"""Input validation for ledger operations.

Runs before any transaction is opened, so malformed input never
consumes retry budget or touches the database.
"""

from datetime import UTC, date, datetime, time

from lendledger.errors import ValidationError


def require_id(value: object, field: str) -> int:
    """Return ``value`` if it is a positive integer identifier."""
    # bool is an int subclass; True must not pass as id 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value <= 0:
        raise ValidationError(f"{field} must be positive", field=field)
    return value


def require_penalty(value: object, field: str = "penalty_cents") -> int:
    """Return a non-negative penalty amount in minor currency units."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in cents", field=field)
    if value < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return value


def require_units(value: object, field: str = "total_units") -> int:
    """Return a non-negative unit count."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return value


def end_of_day(day: date) -> datetime:
    """Last representable instant of ``day`` in UTC."""
    return datetime.combine(day, time.max, tzinfo=UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC.

    SQLite returns stored timestamps without tzinfo; they are always UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_due_at(value: object, field: str = "due_at") -> datetime:
    """Normalize a due date to an aware UTC datetime.

    Accepts a datetime, a date or an ISO-8601 string. A bare date (or a
    ``YYYY-MM-DD`` string) means the loan is due by the end of that day.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return end_of_day(value)
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            try:
                return end_of_day(date.fromisoformat(text))
            except ValueError:
                pass
        else:
            try:
                return as_utc(datetime.fromisoformat(text))
            except ValueError:
                pass
        raise ValidationError(
            f"{field} is not a valid ISO-8601 date: {value!r}", field=field
        )
    raise ValidationError(f"{field} must be a date, datetime or ISO string", field=field)
