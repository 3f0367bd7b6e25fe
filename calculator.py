"""
Derived values for a violation case: fines, due dates, overweight and totals.

All functions are pure. Weights are handled as Decimal so that two-decimal
rounding is half-up on the exact typed value rather than on a binary float.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Iterable

FINE_RATES = {
    1: 300_000,
    2: 600_000,
    3: 1_000_000,
}
FINE_PER_TON_OVER = 50_000
DEFAULT_DUE_DAYS = 30


def parse_number(value: object) -> Decimal | None:
    """Parse a form value as a finite decimal; None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    if not number.is_finite():
        return None
    return number


def round_half_up(value: Decimal, places: int = 2) -> Decimal:
    with localcontext() as ctx:
        # quantize needs room for every integer digit plus the decimals
        ctx.prec = max(ctx.prec, value.adjusted() + places + 2)
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def format_number(value: object, decimals: int = 2) -> str:
    """Two-decimal rendering used on the form; '' when the value is not numeric."""
    number = parse_number(value)
    if number is None:
        return ""
    return f"{round_half_up(number, decimals):.{decimals}f}"


def fine(violation_count: int, overweight_kg: float = 0) -> int:
    if violation_count >= 3:
        base = FINE_RATES[3]
    elif violation_count == 2:
        base = FINE_RATES[2]
    else:
        base = FINE_RATES[1]
    tons_over = int(max(0, overweight_kg) // 1000)
    return base + tons_over * FINE_PER_TON_OVER


def overweight(actual: float, allowed: float) -> float:
    return max(0, actual - allowed)


def overweight_percentage(actual: float, allowed: float) -> str:
    allowed_d = parse_number(allowed)
    actual_d = parse_number(actual)
    if allowed_d is None or actual_d is None or allowed_d <= 0:
        return "0.0%"
    percentage = max(Decimal(0), (actual_d - allowed_d) / allowed_d * 100)
    return f"{round_half_up(percentage, 1):.1f}%"


def due_date(detection_date: date | datetime, days: int = DEFAULT_DUE_DAYS) -> date:
    if isinstance(detection_date, datetime):
        detection_date = detection_date.date()
    return detection_date + timedelta(days=days)


def total_weight(values: Iterable[object], positive_only: bool = False) -> Decimal:
    """Sum the parseable entries, rounded to two decimals.

    Unparseable entries count as zero. With positive_only, zero and negative
    entries are skipped too (the rule used for the axle rows on the form).
    """
    total = Decimal(0)
    for value in values:
        number = parse_number(value)
        if number is None:
            continue
        if positive_only and number <= 0:
            continue
        total += number
    return round_half_up(total)


def format_currency(amount: int) -> str:
    return f"{amount:,}원"
