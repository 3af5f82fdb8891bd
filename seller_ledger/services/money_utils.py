from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def decimal_or_zero(raw_value: object) -> Decimal:
    if raw_value is None:
        return ZERO
    try:
        return Decimal(str(raw_value))
    except (InvalidOperation, TypeError, ValueError):
        return ZERO


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT)


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return money(part / whole * Decimal('100'))


def day_bounds(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    if end_date < start_date:
        raise ValueError('End date must be on or after start date')
    start_at = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    end_at = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start_at, end_at


def iso_day(value: datetime | date) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


def normalize_filter_values(values: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    if not values:
        return ()
    return tuple(sorted({value.strip() for value in values if value and value.strip()}))
