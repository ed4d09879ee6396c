import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP

DAY_SECONDS = 86400

# (minimum days strictly above which the tier applies, percentage), checked in order
REFUND_TIERS = (
    (30, 75),
    (15, 50),
)


@dataclass(frozen=True)
class Refund:
    percentage: int
    amount: int
    days_until_check_in: int


def check_in_instant(check_in: date) -> datetime:
    return datetime.combine(check_in, time.min, tzinfo=timezone.utc)


def days_until(check_in: date, now: datetime) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    delta = check_in_instant(check_in) - now
    return math.ceil(delta.total_seconds() / DAY_SECONDS)


def refund_percentage(days_until_check_in: int) -> int:
    for threshold, percentage in REFUND_TIERS:
        if days_until_check_in > threshold:
            return percentage
    return 0


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_refund(total_amount: int, check_in: date, now: datetime) -> Refund:
    """
    Tiered refund by lead time to check-in:
      > 30 days   -> 75%
      16..30 days -> 50%
      <= 15 days  -> 0% (also when check-in already passed)
    """
    days = days_until(check_in, now)
    percentage = refund_percentage(days)
    amount = round_half_up(Decimal(total_amount) * percentage / 100)
    return Refund(percentage=percentage, amount=amount, days_until_check_in=days)
