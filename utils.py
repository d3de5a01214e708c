"""Small helpers shared by the store components."""

import math
import random
import string
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

BASE36_CHARS = string.digits + string.ascii_uppercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (pymongo returns naive UTC by default)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def random_code(length: int = 4) -> str:
    """Random uppercase base36 characters."""
    return "".join(random.choices(BASE36_CHARS, k=length))


def round_half_up(value: float, places: int = 2) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def round_money(value: float) -> float:
    return round_half_up(value, 2)


def to_paise(amount: float) -> int:
    return int(round_half_up(amount * 100, 0))


def paginate(total: int, page: int, limit: int, returned: int) -> dict:
    skip = (page - 1) * limit
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total": total,
        "has_next": skip + returned < total,
        "has_prev": page > 1,
    }
