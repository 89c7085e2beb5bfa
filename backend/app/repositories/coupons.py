"""Storage adapter the coupon rule engine and code generator read through."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.catalog import Product
from app.models.coupon import Coupon, CouponUsage
from app.services.coupon_rules import normalize_code


def _as_uuid(value: object) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except ValueError:
        return None


class CouponRepository:
    """Read-side queries for coupons, usages and product categories."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_code(self, code: str) -> Coupon | None:
        cleaned = normalize_code(code)
        if not cleaned:
            return None
        result = await self.session.execute(select(Coupon).where(Coupon.code == cleaned))
        return result.scalar_one_or_none()

    async def count_user_usages(self, *, coupon_id: UUID, user_id: object) -> int:
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            return 0
        count = await self.session.scalar(
            select(func.count())
            .select_from(CouponUsage)
            .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_uuid)
        )
        return int(count or 0)

    async def code_exists(self, code: str) -> bool:
        cleaned = normalize_code(code)
        count = await self.session.scalar(select(func.count()).select_from(Coupon).where(Coupon.code == cleaned))
        return int(count or 0) > 0

    async def product_categories(self, product_ids: Iterable[object]) -> dict[str, str]:
        """Map product id -> category id for the given products; unknown ids are skipped."""
        wanted = {uuid for uuid in (_as_uuid(pid) for pid in product_ids) if uuid is not None}
        if not wanted:
            return {}
        rows = (await self.session.execute(select(Product.id, Product.category_id).where(Product.id.in_(wanted)))).all()
        return {str(product_id): str(category_id) for product_id, category_id in rows}
