from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Union

from errors import Conflict

CENT = Decimal("0.01")

AmountLike = Union[Decimal, int, str]


def to_cents(value: AmountLike) -> int:
    """Convert a decimal money amount to integer cents without rounding.

    Amounts with more than two fractional digits are rejected rather than
    rounded, so no cent can appear or vanish on the way in.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = amount * 100
    if cents != cents.to_integral_value():
        raise ValueError("Amount cannot have more than two decimal places")
    return int(cents)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def ensure_positive(cents: int) -> int:
    if cents <= 0:
        raise Conflict("Amount must be greater than zero")
    return cents


def normalize_tags(tags: Optional[Iterable[str]]) -> list[str]:
    if not tags:
        return []
    seen: list[str] = []
    for raw in tags:
        name = (raw or "").strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen
