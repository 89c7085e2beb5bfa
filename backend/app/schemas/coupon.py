from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.coupon import COUPON_CODE_MAX_LENGTH, CouponType
from app.schemas.admin_common import AdminPaginationMeta

CouponSortField = Literal["created_at", "code", "name", "start_date", "end_date", "usage_count"]


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=COUPON_CODE_MAX_LENGTH)
    name: str | None = Field(default=None, max_length=160)
    type: CouponType
    discount_percent: Decimal | None = Field(default=None, gt=0, le=100)
    discount_amount: Decimal | None = Field(default=None, gt=0)
    start_date: datetime
    end_date: datetime
    min_purchase: Decimal | None = Field(default=None, ge=0)
    max_discount: Decimal | None = Field(default=None, gt=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=1, ge=1)
    apply_to_all: bool = True
    user_ids: list[str] = Field(default_factory=list)
    product_ids: list[str] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)
    is_active: bool = True


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=COUPON_CODE_MAX_LENGTH)
    name: str | None = Field(default=None, max_length=160)
    type: CouponType | None = None
    discount_percent: Decimal | None = Field(default=None, gt=0, le=100)
    discount_amount: Decimal | None = Field(default=None, gt=0)
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_purchase: Decimal | None = Field(default=None, ge=0)
    max_discount: Decimal | None = Field(default=None, gt=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=None, ge=1)
    apply_to_all: bool | None = None
    user_ids: list[str] | None = None
    product_ids: list[str] | None = None
    category_ids: list[str] | None = None
    is_active: bool | None = None


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str | None = None
    type: CouponType
    discount_percent: Decimal | None = None
    discount_amount: Decimal | None = None
    start_date: datetime
    end_date: datetime
    min_purchase: Decimal | None = None
    max_discount: Decimal | None = None
    usage_limit: int | None = None
    usage_count: int
    user_usage_limit: int | None = None
    user_ids: list[str] | None = None
    product_ids: list[str] | None = None
    category_ids: list[str] | None = None
    apply_to_all: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CouponPublicRead(BaseModel):
    """What a shopper sees about a coupon that was accepted for their cart."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str | None = None
    type: CouponType
    discount_percent: Decimal | None = None
    discount_amount: Decimal | None = None
    max_discount: Decimal | None = None
    min_purchase: Decimal | None = None
    end_date: datetime


class CouponListResponse(BaseModel):
    items: list[CouponRead]
    meta: AdminPaginationMeta


class CouponStats(BaseModel):
    coupon: CouponRead
    total_usage: int
    total_discount: Decimal


class CartItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    category_id: str | None = Field(default=None, max_length=64)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=COUPON_CODE_MAX_LENGTH)
    subtotal: Decimal = Field(ge=0)
    cart_items: list[CartItemIn] = Field(default_factory=list)


class CouponValidateResponse(BaseModel):
    coupon: CouponPublicRead
    discount: Decimal


class CouponCodeResponse(BaseModel):
    code: str
