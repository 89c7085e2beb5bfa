from app.db.base import Base  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
from app.models.catalog import Category, Product  # noqa: F401
from app.models.coupon import Coupon, CouponType, CouponUsage  # noqa: F401

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Category",
    "Product",
    "Coupon",
    "CouponType",
    "CouponUsage",
]
