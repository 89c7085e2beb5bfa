"""Coupon eligibility rules and discount arithmetic used at checkout.

`validate_coupon` answers one question: is this code redeemable for this cart
right now, and for how much. Rules run in a fixed order and the first failure
wins, so callers always see the same reason for the same inputs:

1. lookup by normalized code
2. active flag
3. date window (inclusive, evaluated against the current instant)
4. global usage cap
5. per-user usage cap (only evaluated for identified callers unless
   `fail_closed_for_anonymous` is set)
6. audience targeting (personalized coupons)
7. minimum purchase
8. product/category scope

The engine only reads. Incrementing `usage_count` and writing usage rows
happens when an order is placed, see `app.services.coupons.record_coupon_usage`.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from app.core.config import settings
from app.models.coupon import CouponType
from app.services import pricing

logger = logging.getLogger(__name__)


class CouponRejection(str, enum.Enum):
    not_found = "not_found"
    inactive = "inactive"
    out_of_window = "out_of_window"
    usage_limit_reached = "usage_limit_reached"
    user_usage_limit_reached = "user_usage_limit_reached"
    not_eligible_user = "not_eligible_user"
    below_minimum_purchase = "below_minimum_purchase"
    scope_mismatch = "scope_mismatch"
    invalid_configuration = "invalid_configuration"


_REJECTION_MESSAGES: dict[CouponRejection, str] = {
    CouponRejection.not_found: "Coupon code not found",
    CouponRejection.inactive: "This coupon code is not active",
    CouponRejection.out_of_window: "This coupon code is not valid at this time",
    CouponRejection.usage_limit_reached: "This coupon code has reached its usage limit",
    CouponRejection.user_usage_limit_reached: "You cannot use this coupon code any more",
    CouponRejection.not_eligible_user: "This coupon code is not available for your account",
    CouponRejection.below_minimum_purchase: "Minimum purchase amount not reached",
    CouponRejection.scope_mismatch: "This coupon code does not apply to the items in your cart",
    CouponRejection.invalid_configuration: "This coupon code cannot be applied",
}


@dataclass(frozen=True)
class CartLine:
    product_id: str
    category_id: str | None = None


@dataclass(frozen=True)
class CouponDecision:
    reason: CouponRejection | None = None
    coupon: Any = None
    discount: Decimal = pricing.ZERO
    required_minimum: Decimal | None = None

    @property
    def eligible(self) -> bool:
        return self.reason is None


class CouponStore(Protocol):
    async def get_by_code(self, code: str) -> Any: ...

    async def count_user_usages(self, *, coupon_id: Any, user_id: Any) -> int: ...


class CouponRejectedError(Exception):
    """Raised by HTTP-facing callers to turn a rejection into an error response."""

    def __init__(self, decision: CouponDecision) -> None:
        if decision.reason is None:
            raise ValueError("An eligible decision cannot be raised as a rejection")
        self.decision = decision
        super().__init__(describe_rejection(decision))

    @property
    def reason(self) -> CouponRejection:
        return self.decision.reason  # type: ignore[return-value]

    @property
    def status_code(self) -> int:
        return 404 if self.reason == CouponRejection.not_found else 400


def describe_rejection(decision: CouponDecision) -> str:
    if decision.reason is None:
        return ""
    if decision.reason == CouponRejection.below_minimum_purchase and decision.required_minimum is not None:
        return f"Minimum purchase amount: {decision.required_minimum:.2f}"
    return _REJECTION_MESSAGES[decision.reason]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def canonical_id(value: object) -> str:
    # UUIDs compare by canonical form so "ABC-..." and "abc-..." are the same user/product.
    raw = str(value).strip()
    try:
        return str(UUID(raw))
    except ValueError:
        return raw


def _id_set(values: Iterable[object] | None) -> set[str]:
    return {canonical_id(value) for value in values or [] if value is not None and str(value).strip()}


def _caller_key(user_id: object | None) -> str | None:
    if user_id is None or not str(user_id).strip():
        return None
    return canonical_id(user_id)


def _is_within_window(coupon: Any, now: datetime) -> bool:
    starts = getattr(coupon, "start_date", None)
    ends = getattr(coupon, "end_date", None)
    if starts is not None and now < as_utc(starts):
        return False
    if ends is not None and now > as_utc(ends):
        return False
    return True


class _MalformedCoupon(ValueError):
    """A stored coupon field cannot be read as a finite number."""


def _stored_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    try:
        number = pricing.to_decimal(value)
    except ValueError as exc:
        raise _MalformedCoupon(str(exc)) from exc
    if not number.is_finite():
        raise _MalformedCoupon(f"Non-finite amount: {value!r}")
    return number


def _stored_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError) as exc:
        raise _MalformedCoupon(f"Invalid count: {value!r}") from exc


def _usage_cap_reached(coupon: Any) -> bool:
    limit = _stored_int(getattr(coupon, "usage_limit", None))
    if limit is None:
        return False
    return (_stored_int(getattr(coupon, "usage_count", 0)) or 0) >= limit


async def _user_cap_reached(
    store: CouponStore,
    *,
    coupon: Any,
    user_id: object | None,
    caller: str | None,
    fail_closed_for_anonymous: bool,
) -> bool:
    limit = _stored_int(getattr(coupon, "user_usage_limit", None))
    if limit is None:
        return False
    if caller is None:
        return fail_closed_for_anonymous
    used = await store.count_user_usages(coupon_id=coupon.id, user_id=user_id)
    return int(used or 0) >= limit


def _audience_allows(coupon: Any, caller: str | None) -> bool:
    audience = _id_set(getattr(coupon, "user_ids", None))
    if not audience:
        return True
    return caller is not None and caller in audience


def _missing_minimum(coupon: Any, subtotal: Decimal) -> Decimal | None:
    required = _stored_decimal(getattr(coupon, "min_purchase", None))
    if required is None:
        return None
    if subtotal < required:
        return pricing.quantize_money(required)
    return None


def cart_matches_scope(coupon: Any, cart_items: Sequence[CartLine]) -> bool:
    """Product scope is checked first; a category match is enough when it fails."""
    if getattr(coupon, "apply_to_all", True):
        return True

    product_scope = _id_set(getattr(coupon, "product_ids", None))
    if product_scope and any(canonical_id(line.product_id) in product_scope for line in cart_items):
        return True

    category_scope = _id_set(getattr(coupon, "category_ids", None))
    if category_scope:
        return any(line.category_id is not None and canonical_id(line.category_id) in category_scope for line in cart_items)
    return False


def _coupon_type(coupon: Any) -> CouponType | None:
    raw = getattr(coupon, "type", None)
    try:
        return CouponType(getattr(raw, "value", raw))
    except ValueError:
        return None


def _percentage_discount(coupon: Any, subtotal: Decimal) -> Decimal | None:
    percent = _stored_decimal(getattr(coupon, "discount_percent", None))
    if percent is None or percent <= 0 or percent > 100:
        return None
    discount = pricing.percent_of(subtotal, percent)
    cap = _stored_decimal(getattr(coupon, "max_discount", None))
    if cap is not None and discount > cap:
        discount = cap
    return discount


def _fixed_discount(coupon: Any, subtotal: Decimal) -> Decimal | None:
    amount = _stored_decimal(getattr(coupon, "discount_amount", None))
    if amount is None or amount <= 0:
        return None
    return min(amount, subtotal)


def compute_discount(
    coupon: Any,
    subtotal: Decimal,
    *,
    rounding: pricing.MoneyRounding = "half_up",
) -> Decimal | None:
    """Return the discount in money units, or None when the coupon is misconfigured."""
    coupon_type = _coupon_type(coupon)
    try:
        if coupon_type == CouponType.PERCENTAGE:
            raw = _percentage_discount(coupon, subtotal)
        elif coupon_type == CouponType.FIXED_AMOUNT:
            raw = _fixed_discount(coupon, subtotal)
        else:
            raw = None
    except _MalformedCoupon:
        return None
    if raw is None:
        return None
    return pricing.cap_money(raw, subtotal, rounding=rounding)


def _reject(
    reason: CouponRejection,
    *,
    code: str,
    coupon: Any = None,
    required_minimum: Decimal | None = None,
) -> CouponDecision:
    logger.info("coupon_rejected", extra={"coupon_code": code, "reason": reason.value})
    return CouponDecision(reason=reason, coupon=coupon, required_minimum=required_minimum)


def _misconfigured(coupon: Any, *, code: str, detail: str | None = None) -> CouponDecision:
    logger.warning(
        "coupon_misconfigured",
        extra={
            "coupon_code": code,
            "coupon_type": str(getattr(coupon, "type", None)),
            "detail": detail,
        },
    )
    return _reject(CouponRejection.invalid_configuration, code=code, coupon=coupon)


async def validate_coupon(
    store: CouponStore,
    *,
    code: str,
    user_id: object | None = None,
    cart_items: Sequence[CartLine] = (),
    subtotal: Decimal,
    now: datetime | None = None,
    fail_closed_for_anonymous: bool | None = None,
    rounding: pricing.MoneyRounding | None = None,
) -> CouponDecision:
    amount = pricing.to_decimal(subtotal)
    if not amount.is_finite() or amount < 0:
        raise ValueError("Subtotal must be a non-negative amount")
    if fail_closed_for_anonymous is None:
        fail_closed_for_anonymous = settings.coupon_fail_closed_for_anonymous
    rounding = rounding or settings.money_rounding

    cleaned = normalize_code(code)
    coupon = await store.get_by_code(cleaned) if cleaned else None
    if coupon is None:
        return _reject(CouponRejection.not_found, code=cleaned)

    moment = as_utc(now or _now())
    caller = _caller_key(user_id)

    if not coupon.is_active:
        return _reject(CouponRejection.inactive, code=cleaned, coupon=coupon)
    if not _is_within_window(coupon, moment):
        return _reject(CouponRejection.out_of_window, code=cleaned, coupon=coupon)

    try:
        if _usage_cap_reached(coupon):
            return _reject(CouponRejection.usage_limit_reached, code=cleaned, coupon=coupon)
        if await _user_cap_reached(
            store,
            coupon=coupon,
            user_id=user_id,
            caller=caller,
            fail_closed_for_anonymous=fail_closed_for_anonymous,
        ):
            return _reject(CouponRejection.user_usage_limit_reached, code=cleaned, coupon=coupon)
        if not _audience_allows(coupon, caller):
            return _reject(CouponRejection.not_eligible_user, code=cleaned, coupon=coupon)
        required = _missing_minimum(coupon, amount)
    except _MalformedCoupon as exc:
        return _misconfigured(coupon, code=cleaned, detail=str(exc))
    if required is not None:
        return _reject(CouponRejection.below_minimum_purchase, code=cleaned, coupon=coupon, required_minimum=required)
    if not cart_matches_scope(coupon, cart_items):
        return _reject(CouponRejection.scope_mismatch, code=cleaned, coupon=coupon)

    discount = compute_discount(coupon, amount, rounding=rounding)
    if discount is None:
        return _misconfigured(coupon, code=cleaned)
    return CouponDecision(coupon=coupon, discount=discount)
