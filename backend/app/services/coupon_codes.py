from __future__ import annotations

import logging
import secrets
import string
from typing import Protocol

from app.core.config import settings

logger = logging.getLogger(__name__)

COUPON_CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_CODE_LENGTH = 8


class CodeRegistry(Protocol):
    async def code_exists(self, code: str) -> bool: ...


class CouponCodeExhaustedError(RuntimeError):
    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Failed to generate a unique coupon code after {attempts} attempts")


def _resolve_length(length: object) -> int:
    try:
        size = int(length)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return DEFAULT_CODE_LENGTH
    if size < 1:
        return DEFAULT_CODE_LENGTH
    return size


def generate_coupon_code(length: object = DEFAULT_CODE_LENGTH) -> str:
    """Random uppercase alphanumeric code, no separators.

    Uniqueness is the caller's concern, see `generate_unique_coupon_code`.
    """
    size = _resolve_length(length)
    return "".join(secrets.choice(COUPON_CODE_ALPHABET) for _ in range(size))


async def generate_unique_coupon_code(
    registry: CodeRegistry,
    *,
    length: object = None,
    attempts: int | None = None,
) -> str:
    size = _resolve_length(settings.coupon_code_default_length if length is None else length)
    max_attempts = max(1, int(attempts or settings.coupon_code_max_attempts))

    for attempt in range(1, max_attempts + 1):
        candidate = generate_coupon_code(size)
        if not await registry.code_exists(candidate):
            logger.info("coupon_code_generated", extra={"coupon_code": candidate, "attempt": attempt})
            return candidate
    logger.warning("coupon_code_generation_exhausted", extra={"attempts": max_attempts, "length": size})
    raise CouponCodeExhaustedError(max_attempts)
