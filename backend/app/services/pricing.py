from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def to_decimal(value: object) -> Decimal:
    """Coerce DB/JSON numerics into Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        raise ValueError("Amount is required")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return amount * percent / Decimal("100")


def cap_money(value: Decimal, ceiling: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    """Round `value` to cents without ever exceeding `ceiling` or dropping below zero."""
    if value <= 0:
        return ZERO
    rounded = quantize_money(min(value, ceiling), rounding=rounding)
    if rounded > ceiling:
        rounded = quantize_money(ceiling, rounding="down")
    return rounded
