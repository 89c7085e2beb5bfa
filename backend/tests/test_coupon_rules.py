from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.models.coupon import CouponType
from app.services import coupon_rules
from app.services.coupon_rules import CartLine, CouponRejectedError, CouponRejection


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class _StoreStub:
    def __init__(self, *coupons: SimpleNamespace, usages: dict[tuple[str, str], int] | None = None) -> None:
        self._coupons = {c.code: c for c in coupons}
        self._usages = usages or {}
        self.lookups: list[str] = []
        self.usage_calls = 0

    async def get_by_code(self, code: str) -> SimpleNamespace | None:
        await asyncio.sleep(0)
        self.lookups.append(code)
        return self._coupons.get(code)

    async def count_user_usages(self, *, coupon_id: object, user_id: object) -> int:
        await asyncio.sleep(0)
        self.usage_calls += 1
        return self._usages.get((str(coupon_id), str(user_id)), 0)


def _coupon(**overrides: object) -> SimpleNamespace:
    data: dict[str, object] = {
        "id": uuid.uuid4(),
        "code": "SAVE10",
        "type": CouponType.PERCENTAGE,
        "discount_percent": Decimal("10"),
        "discount_amount": None,
        "start_date": NOW - timedelta(days=1),
        "end_date": NOW + timedelta(days=1),
        "min_purchase": None,
        "max_discount": None,
        "usage_limit": None,
        "usage_count": 0,
        "user_usage_limit": None,
        "user_ids": None,
        "product_ids": None,
        "category_ids": None,
        "apply_to_all": True,
        "is_active": True,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


async def _validate(store: _StoreStub, **kwargs: object) -> coupon_rules.CouponDecision:
    params: dict[str, object] = {"code": "SAVE10", "subtotal": Decimal("50.00"), "now": NOW, "rounding": "half_up"}
    params.update(kwargs)
    return await coupon_rules.validate_coupon(store, **params)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_percentage_coupon_discounts_subtotal() -> None:
    coupon = _coupon()
    decision = await _validate(_StoreStub(coupon))
    assert decision.eligible
    assert decision.coupon is coupon
    assert decision.discount == Decimal("5.00")


@pytest.mark.anyio
async def test_fixed_amount_is_clamped_to_subtotal() -> None:
    coupon = _coupon(code="FLAT20", type=CouponType.FIXED_AMOUNT, discount_percent=None, discount_amount=Decimal("20"))
    store = _StoreStub(coupon)

    below = await _validate(store, code="FLAT20", subtotal=Decimal("15.00"))
    assert below.discount == Decimal("15.00")

    above = await _validate(store, code="FLAT20", subtotal=Decimal("80.00"))
    assert above.discount == Decimal("20.00")


@pytest.mark.anyio
async def test_percentage_discount_clamped_to_max_discount() -> None:
    store = _StoreStub(_coupon(discount_percent=Decimal("25"), max_discount=Decimal("12.50")))
    for subtotal in (Decimal("60.00"), Decimal("999.99"), Decimal("12345.67")):
        decision = await _validate(store, subtotal=subtotal)
        assert decision.discount == Decimal("12.50")


@pytest.mark.anyio
async def test_below_minimum_purchase_carries_required_amount() -> None:
    store = _StoreStub(_coupon(min_purchase=Decimal("30")))
    decision = await _validate(store, subtotal=Decimal("25.00"))
    assert decision.reason == CouponRejection.below_minimum_purchase
    assert decision.required_minimum == Decimal("30.00")
    assert coupon_rules.describe_rejection(decision) == "Minimum purchase amount: 30.00"

    exact = await _validate(store, subtotal=Decimal("30.00"))
    assert exact.eligible


@pytest.mark.anyio
async def test_per_user_limit_applies_per_user() -> None:
    coupon = _coupon(user_usage_limit=1)
    used_user = uuid.uuid4()
    fresh_user = uuid.uuid4()
    store = _StoreStub(coupon, usages={(str(coupon.id), str(used_user)): 1})

    blocked = await _validate(store, user_id=used_user)
    assert blocked.reason == CouponRejection.user_usage_limit_reached

    allowed = await _validate(store, user_id=fresh_user)
    assert allowed.eligible
    assert allowed.discount == Decimal("5.00")


@pytest.mark.anyio
async def test_guest_skips_per_user_limit_unless_fail_closed() -> None:
    store = _StoreStub(_coupon(user_usage_limit=1))

    lenient = await _validate(store, user_id=None, fail_closed_for_anonymous=False)
    assert lenient.eligible
    assert store.usage_calls == 0

    strict = await _validate(store, user_id=None, fail_closed_for_anonymous=True)
    assert strict.reason == CouponRejection.user_usage_limit_reached


@pytest.mark.anyio
async def test_inactive_wins_over_every_other_rule() -> None:
    store = _StoreStub(
        _coupon(
            is_active=False,
            end_date=NOW - timedelta(days=3),
            usage_limit=1,
            usage_count=5,
            min_purchase=Decimal("1000"),
            apply_to_all=False,
        )
    )
    decision = await _validate(store)
    assert decision.reason == CouponRejection.inactive


@pytest.mark.anyio
async def test_date_window_is_inclusive() -> None:
    start = NOW - timedelta(hours=1)
    end = NOW + timedelta(hours=1)
    store = _StoreStub(_coupon(start_date=start, end_date=end))

    assert (await _validate(store, now=start)).eligible
    assert (await _validate(store, now=end)).eligible
    before = await _validate(store, now=start - timedelta(seconds=1))
    after = await _validate(store, now=end + timedelta(seconds=1))
    assert before.reason == CouponRejection.out_of_window
    assert after.reason == CouponRejection.out_of_window


@pytest.mark.anyio
async def test_naive_window_bounds_are_read_as_utc() -> None:
    store = _StoreStub(_coupon(start_date=datetime(2026, 4, 30), end_date=datetime(2026, 5, 2)))
    assert (await _validate(store)).eligible


@pytest.mark.anyio
async def test_global_usage_cap() -> None:
    store = _StoreStub(_coupon(usage_limit=3, usage_count=3))
    assert (await _validate(store)).reason == CouponRejection.usage_limit_reached

    store = _StoreStub(_coupon(usage_limit=3, usage_count=2))
    assert (await _validate(store)).eligible


@pytest.mark.anyio
async def test_audience_targeting() -> None:
    member = uuid.uuid4()
    store = _StoreStub(_coupon(user_ids=[str(member).upper()]))

    assert (await _validate(store, user_id=member)).eligible
    assert (await _validate(store, user_id=uuid.uuid4())).reason == CouponRejection.not_eligible_user
    assert (await _validate(store, user_id=None)).reason == CouponRejection.not_eligible_user


@pytest.mark.anyio
async def test_product_scope_mismatch_then_match() -> None:
    store = _StoreStub(_coupon(apply_to_all=False, product_ids=["P1"], category_ids=[]))

    mismatch = await _validate(store, cart_items=[CartLine(product_id="P2", category_id="C1")])
    assert mismatch.reason == CouponRejection.scope_mismatch

    match = await _validate(store, cart_items=[CartLine(product_id="P1", category_id="C9")])
    assert match.eligible


@pytest.mark.anyio
async def test_category_scope_is_an_alternative_to_product_scope() -> None:
    store = _StoreStub(_coupon(apply_to_all=False, product_ids=["P1"], category_ids=["C1"]))
    decision = await _validate(store, cart_items=[CartLine(product_id="P2", category_id="C1")])
    assert decision.eligible


@pytest.mark.anyio
async def test_empty_scope_without_apply_to_all_never_matches() -> None:
    store = _StoreStub(_coupon(apply_to_all=False, product_ids=None, category_ids=None))
    decision = await _validate(store, cart_items=[CartLine(product_id="P1", category_id="C1")])
    assert decision.reason == CouponRejection.scope_mismatch


@pytest.mark.anyio
async def test_rule_order_audience_before_minimum_before_scope() -> None:
    store = _StoreStub(
        _coupon(
            user_ids=["someone-else"],
            min_purchase=Decimal("100"),
            apply_to_all=False,
            product_ids=["P1"],
        )
    )
    first = await _validate(store, user_id="me", subtotal=Decimal("10.00"))
    assert first.reason == CouponRejection.not_eligible_user

    store = _StoreStub(_coupon(min_purchase=Decimal("100"), apply_to_all=False, product_ids=["P1"]))
    second = await _validate(store, subtotal=Decimal("10.00"))
    assert second.reason == CouponRejection.below_minimum_purchase


@pytest.mark.anyio
async def test_unknown_and_blank_codes_are_not_found() -> None:
    store = _StoreStub(_coupon())
    assert (await _validate(store, code="NOPE")).reason == CouponRejection.not_found

    blank = await _validate(store, code="   ")
    assert blank.reason == CouponRejection.not_found
    assert store.lookups == ["NOPE"]


@pytest.mark.anyio
async def test_code_lookup_is_normalized() -> None:
    store = _StoreStub(_coupon())
    decision = await _validate(store, code="  save10 ")
    assert decision.eligible
    assert store.lookups == ["SAVE10"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "overrides",
    [
        {"type": CouponType.PERCENTAGE, "discount_percent": None},
        {"type": CouponType.PERCENTAGE, "discount_percent": Decimal("150")},
        {"type": CouponType.FIXED_AMOUNT, "discount_percent": None, "discount_amount": None},
        {"type": CouponType.FIXED_AMOUNT, "discount_percent": None, "discount_amount": Decimal("0")},
        {"type": "BOGUS"},
        {"type": CouponType.PERCENTAGE, "discount_percent": "abc"},
        {"type": CouponType.PERCENTAGE, "discount_percent": Decimal("NaN")},
        {"type": CouponType.PERCENTAGE, "max_discount": "n/a"},
        {"type": CouponType.FIXED_AMOUNT, "discount_percent": None, "discount_amount": Decimal("Infinity")},
        {"min_purchase": "thirty"},
        {"min_purchase": Decimal("NaN")},
        {"usage_limit": "lots"},
        {"user_usage_limit": Decimal("NaN")},
    ],
)
async def test_misconfigured_coupon_is_rejected_not_raised(overrides: dict[str, object]) -> None:
    store = _StoreStub(_coupon(**overrides))
    decision = await _validate(store)
    assert decision.reason == CouponRejection.invalid_configuration
    assert decision.discount == Decimal("0.00")


@pytest.mark.anyio
async def test_validation_is_idempotent() -> None:
    coupon = _coupon(discount_percent=Decimal("12.5"), user_usage_limit=2)
    user_id = uuid.uuid4()
    store = _StoreStub(coupon, usages={(str(coupon.id), str(user_id)): 1})

    first = await _validate(store, user_id=user_id, subtotal=Decimal("19.99"))
    second = await _validate(store, user_id=user_id, subtotal=Decimal("19.99"))
    assert first == second
    assert first.discount == Decimal("2.50")
    assert coupon.usage_count == 0


@pytest.mark.anyio
async def test_rounding_mode_is_applied() -> None:
    store = _StoreStub(_coupon(discount_percent=Decimal("10")))
    half_up = await _validate(store, subtotal=Decimal("0.25"), rounding="half_up")
    half_even = await _validate(store, subtotal=Decimal("0.25"), rounding="half_even")
    assert half_up.discount == Decimal("0.03")
    assert half_even.discount == Decimal("0.02")


@pytest.mark.anyio
async def test_negative_subtotal_is_invalid_input() -> None:
    with pytest.raises(ValueError):
        await _validate(_StoreStub(_coupon()), subtotal=Decimal("-1"))
    with pytest.raises(ValueError):
        await _validate(_StoreStub(_coupon()), subtotal=Decimal("NaN"))


@pytest.mark.anyio
async def test_zero_subtotal_gives_zero_discount() -> None:
    decision = await _validate(_StoreStub(_coupon()), subtotal=Decimal("0"))
    assert decision.eligible
    assert decision.discount == Decimal("0.00")


def test_rejected_error_maps_reasons_to_status() -> None:
    not_found = CouponRejectedError(coupon_rules.CouponDecision(reason=CouponRejection.not_found))
    assert not_found.status_code == 404
    assert str(not_found) == "Coupon code not found"

    inactive = CouponRejectedError(coupon_rules.CouponDecision(reason=CouponRejection.inactive))
    assert inactive.status_code == 400
    assert inactive.reason is CouponRejection.inactive

    with pytest.raises(ValueError):
        CouponRejectedError(coupon_rules.CouponDecision())


def test_cart_matches_scope_compares_uuid_ids_canonically() -> None:
    product_id = uuid.uuid4()
    coupon = _coupon(apply_to_all=False, product_ids=[str(product_id)])
    assert coupon_rules.cart_matches_scope(coupon, [CartLine(product_id=str(product_id).upper())])


@pytest.mark.anyio
async def test_misconfigured_coupon_logs_warning(caplog: pytest.LogCaptureFixture) -> None:
    store = _StoreStub(_coupon(min_purchase="thirty"))
    with caplog.at_level(logging.WARNING, logger="app.services.coupon_rules"):
        decision = await _validate(store)

    assert decision.reason == CouponRejection.invalid_configuration
    record = next(r for r in caplog.records if r.getMessage() == "coupon_misconfigured")
    assert record.coupon_code == "SAVE10"
    assert "thirty" in record.detail
