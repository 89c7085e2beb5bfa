from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every non-2xx response.

    `code` is machine readable: a coupon rejection reason such as `not_found` or
    `below_minimum_purchase`, `validation_error` for malformed requests, and null
    for plain HTTP errors.
    """

    detail: Any
    code: str | None = None
