from __future__ import annotations

from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_optional_user, require_admin
from app.db.session import get_session
from app.models.coupon import COUPON_CODE_MAX_LENGTH, CouponType
from app.models.user import User
from app.repositories.coupons import CouponRepository
from app.schemas.admin_common import AdminPaginationMeta
from app.schemas.coupon import (
    CouponCodeResponse,
    CouponCreate,
    CouponListResponse,
    CouponPublicRead,
    CouponRead,
    CouponSortField,
    CouponStats,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidateResponse,
)
from app.services import coupon_codes
from app.services import coupons as coupons_service
from app.services.coupon_rules import CouponRejectedError

router = APIRouter(prefix="/coupons", tags=["coupons"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
OptionalUserDep = Annotated[User | None, Depends(get_optional_user)]
AdminDep = Annotated[User, Depends(require_admin)]
PageQuery = Annotated[int, Query(ge=1)]
LimitQuery = Annotated[int, Query(ge=1, le=100)]
SearchQuery = Annotated[str | None, Query(max_length=100)]
CodeLengthQuery = Annotated[int | None, Query(ge=1, le=COUPON_CODE_MAX_LENGTH)]


@router.post("/validate")
async def validate_coupon(
    payload: CouponValidateRequest,
    session: SessionDep,
    current_user: OptionalUserDep = None,
) -> CouponValidateResponse:
    decision = await coupons_service.validate_cart_coupon(
        session,
        code=payload.code,
        user_id=current_user.id if current_user else None,
        items=payload.cart_items,
        subtotal=payload.subtotal,
    )
    if not decision.eligible:
        raise CouponRejectedError(decision)
    return CouponValidateResponse(
        coupon=CouponPublicRead.model_validate(decision.coupon),
        discount=decision.discount,
    )


@router.get("/generate-code")
async def admin_generate_coupon_code(
    session: SessionDep,
    _: AdminDep,
    length: CodeLengthQuery = None,
) -> CouponCodeResponse:
    try:
        code = await coupon_codes.generate_unique_coupon_code(CouponRepository(session), length=length)
    except coupon_codes.CouponCodeExhaustedError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to generate coupon code")
    return CouponCodeResponse(code=code)


@router.get("/")
async def admin_list_coupons(
    session: SessionDep,
    _: AdminDep,
    page: PageQuery = 1,
    limit: LimitQuery = 20,
    search: SearchQuery = None,
    type: CouponType | None = None,
    is_active: bool | None = None,
    sort_by: CouponSortField = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
) -> CouponListResponse:
    coupons, total_items = await coupons_service.list_coupons(
        session,
        page=page,
        limit=limit,
        search=search,
        coupon_type=type,
        is_active=is_active,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return CouponListResponse(
        items=[CouponRead.model_validate(c) for c in coupons],
        meta=AdminPaginationMeta.build(total_items=total_items, page=page, limit=limit),
    )


@router.get("/{coupon_id}")
async def admin_get_coupon(coupon_id: UUID, session: SessionDep, _: AdminDep) -> CouponRead:
    coupon = await coupons_service.get_coupon(session, coupon_id)
    return CouponRead.model_validate(coupon)


@router.get("/{coupon_id}/stats")
async def admin_coupon_stats(coupon_id: UUID, session: SessionDep, _: AdminDep) -> CouponStats:
    coupon, total_usage, total_discount = await coupons_service.coupon_stats(session, coupon_id)
    return CouponStats(
        coupon=CouponRead.model_validate(coupon),
        total_usage=total_usage,
        total_discount=total_discount,
    )


@router.post("/", status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(payload: CouponCreate, session: SessionDep, _: AdminDep) -> CouponRead:
    coupon = await coupons_service.create_coupon(session, payload)
    return CouponRead.model_validate(coupon)


@router.put("/{coupon_id}")
async def admin_update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: SessionDep,
    _: AdminDep,
) -> CouponRead:
    coupon = await coupons_service.update_coupon(session, coupon_id, payload)
    return CouponRead.model_validate(coupon)


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(coupon_id: UUID, session: SessionDep, _: AdminDep) -> Response:
    await coupons_service.delete_coupon(session, coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
