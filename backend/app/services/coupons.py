from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.coupon import Coupon, CouponType, CouponUsage
from app.repositories.coupons import CouponRepository
from app.schemas.coupon import CartItemIn, CouponCreate, CouponSortField, CouponUpdate
from app.services import coupon_rules, pricing
from app.services.coupon_rules import CartLine, CouponDecision, as_utc, normalize_code

logger = logging.getLogger(__name__)


def _clean_ids(values: Sequence[str] | None) -> list[str] | None:
    if not values:
        return None
    cleaned: list[str] = []
    for value in values:
        item = str(value).strip()
        if item and item not in cleaned:
            cleaned.append(item)
    return cleaned or None


def _validate_discount_fields(
    coupon_type: CouponType,
    *,
    discount_percent: Decimal | None,
    discount_amount: Decimal | None,
) -> None:
    if coupon_type == CouponType.PERCENTAGE:
        if discount_percent is None or not (Decimal("0") < Decimal(discount_percent) <= Decimal("100")):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Enter a valid discount percent (0-100)")
    elif discount_amount is None or Decimal(discount_amount) <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Enter a valid discount amount")


def _validate_window(start_date: datetime, end_date: datetime) -> None:
    if as_utc(start_date) >= as_utc(end_date):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must be after start date")


async def _ensure_code_available(session: AsyncSession, code: str) -> None:
    if await CouponRepository(session).code_exists(code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon code already in use")


def _apply_discount_fields(coupon: Coupon) -> None:
    # Only the field matching the type is kept.
    if coupon.type == CouponType.PERCENTAGE:
        coupon.discount_amount = None
    else:
        coupon.discount_percent = None


async def list_coupons(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    coupon_type: CouponType | None = None,
    is_active: bool | None = None,
    sort_by: CouponSortField = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
) -> tuple[list[Coupon], int]:
    filters: list[Any] = []
    if search and search.strip():
        needle = f"%{search.strip()}%"
        filters.append(or_(Coupon.code.ilike(needle), Coupon.name.ilike(needle)))
    if coupon_type is not None:
        filters.append(Coupon.type == coupon_type)
    if is_active is not None:
        filters.append(Coupon.is_active.is_(is_active))

    count_stmt = select(func.count()).select_from(Coupon)
    query = select(Coupon)
    if filters:
        count_stmt = count_stmt.where(*filters)
        query = query.where(*filters)
    total_items = int((await session.execute(count_stmt)).scalar_one() or 0)

    column = getattr(Coupon, sort_by)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    offset = (page - 1) * limit
    rows = (await session.execute(query.order_by(ordering, Coupon.id).offset(offset).limit(limit))).scalars().all()
    return list(rows), total_items


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


async def create_coupon(session: AsyncSession, payload: CouponCreate) -> Coupon:
    code = normalize_code(payload.code)
    _validate_discount_fields(
        payload.type,
        discount_percent=payload.discount_percent,
        discount_amount=payload.discount_amount,
    )
    _validate_window(payload.start_date, payload.end_date)
    await _ensure_code_available(session, code)

    coupon = Coupon(
        code=code,
        name=(payload.name or "").strip() or None,
        type=payload.type,
        discount_percent=payload.discount_percent,
        discount_amount=payload.discount_amount,
        start_date=as_utc(payload.start_date),
        end_date=as_utc(payload.end_date),
        min_purchase=payload.min_purchase,
        max_discount=payload.max_discount,
        usage_limit=payload.usage_limit,
        usage_count=0,
        user_usage_limit=payload.user_usage_limit,
        user_ids=_clean_ids(payload.user_ids),
        product_ids=_clean_ids(payload.product_ids),
        category_ids=_clean_ids(payload.category_ids),
        apply_to_all=payload.apply_to_all,
        is_active=payload.is_active,
    )
    _apply_discount_fields(coupon)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_code": coupon.code, "coupon_id": str(coupon.id)})
    return coupon


async def update_coupon(session: AsyncSession, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    data = payload.model_dump(exclude_unset=True)

    if data.get("code"):
        code = normalize_code(data["code"])
        if code != coupon.code:
            await _ensure_code_available(session, code)
        data["code"] = code
    elif "code" in data:
        data.pop("code")

    coupon_type = data.get("type") or coupon.type
    _validate_discount_fields(
        coupon_type,
        discount_percent=data.get("discount_percent", coupon.discount_percent),
        discount_amount=data.get("discount_amount", coupon.discount_amount),
    )
    start_date = data.get("start_date") or coupon.start_date
    end_date = data.get("end_date") or coupon.end_date
    _validate_window(start_date, end_date)

    for field in ("user_ids", "product_ids", "category_ids"):
        if field in data:
            data[field] = _clean_ids(data[field])
    for field in ("start_date", "end_date"):
        if data.get(field) is not None:
            data[field] = as_utc(data[field])
        else:
            data.pop(field, None)
    for field in ("type", "apply_to_all", "is_active"):
        if field in data and data[field] is None:
            data.pop(field)
    if "name" in data:
        data["name"] = (data["name"] or "").strip() or None

    for key, value in data.items():
        setattr(coupon, key, value)
    _apply_discount_fields(coupon)

    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_code": coupon.code, "fields": sorted(data)})
    return coupon


async def _usage_totals(session: AsyncSession, coupon_id: UUID) -> tuple[int, Decimal]:
    row = (
        await session.execute(
            select(func.count(CouponUsage.id), func.coalesce(func.sum(CouponUsage.discount), 0)).where(
                CouponUsage.coupon_id == coupon_id
            )
        )
    ).one()
    return int(row[0] or 0), pricing.quantize_money(pricing.to_decimal(row[1] or 0))


async def delete_coupon(session: AsyncSession, coupon_id: UUID) -> None:
    coupon = await get_coupon(session, coupon_id)
    used, _ = await _usage_totals(session, coupon.id)
    if used > 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon has been used and cannot be deleted")
    code = coupon.code
    await session.delete(coupon)
    await session.commit()
    logger.info("coupon_deleted", extra={"coupon_code": code})


async def coupon_stats(session: AsyncSession, coupon_id: UUID) -> tuple[Coupon, int, Decimal]:
    coupon = await get_coupon(session, coupon_id)
    total_usage, total_discount = await _usage_totals(session, coupon.id)
    return coupon, total_usage, total_discount


async def _cart_lines(repo: CouponRepository, items: Sequence[CartItemIn]) -> list[CartLine]:
    missing = [item.product_id for item in items if not item.category_id]
    categories = await repo.product_categories(missing) if missing else {}
    lines: list[CartLine] = []
    for item in items:
        category_id = item.category_id or categories.get(coupon_rules.canonical_id(item.product_id))
        lines.append(CartLine(product_id=item.product_id, category_id=category_id))
    return lines


async def validate_cart_coupon(
    session: AsyncSession,
    *,
    code: str,
    user_id: UUID | None,
    items: Sequence[CartItemIn],
    subtotal: Decimal,
) -> CouponDecision:
    """Checkout entry point: fills in catalog categories, then runs the rule engine."""
    repo = CouponRepository(session)
    lines = await _cart_lines(repo, items)
    return await coupon_rules.validate_coupon(
        repo,
        code=code,
        user_id=user_id,
        cart_items=lines,
        subtotal=subtotal,
    )


async def record_coupon_usage(
    session: AsyncSession,
    *,
    coupon_id: UUID,
    user_id: UUID,
    discount: Decimal,
    order_id: str | None = None,
) -> CouponUsage:
    """Consume one redemption when an order is committed.

    Caps are re-checked under a row lock and the global counter only moves through
    a conditional UPDATE, so two checkouts that both validated cannot overshoot
    `usage_limit` or `user_usage_limit`.
    """
    locked = (await session.execute(select(Coupon).where(Coupon.id == coupon_id).with_for_update())).scalars().first()
    if locked is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")

    if locked.user_usage_limit is not None:
        used = await CouponRepository(session).count_user_usages(coupon_id=coupon_id, user_id=user_id)
        if used >= int(locked.user_usage_limit):
            await session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon per-user limit reached")

    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon usage limit reached")

    usage = CouponUsage(
        coupon_id=coupon_id,
        user_id=user_id,
        order_id=order_id,
        discount=pricing.quantize_money(pricing.to_decimal(discount)),
    )
    session.add(usage)
    await session.commit()
    await session.refresh(usage)
    logger.info(
        "coupon_usage_recorded",
        extra={"coupon_code": locked.code, "coupon_id": str(coupon_id), "order_id": order_id},
    )
    return usage
