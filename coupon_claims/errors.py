"""Domain errors and their HTTP rendering."""

from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.requests import Request

from .logging import get_logger, get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def payload(self) -> dict:
        return {"error": self.message, "code": self.code}


class IneligibleError(AppError):
    """The identity already holds an active claim."""
    code = "ineligible"
    status_code = 429

    def __init__(self, minutes_remaining: int):
        super().__init__(
            f"You've already claimed a coupon. Please wait {minutes_remaining} minutes before claiming another."
        )
        self.minutes_remaining = minutes_remaining

    def payload(self) -> dict:
        body = super().payload()
        body["minutesRemaining"] = self.minutes_remaining
        return body


class PoolExhaustedError(AppError):
    """No coupons are configured at all."""
    code = "pool_exhausted"
    status_code = 404

    def __init__(self, message: str = "No coupons available at this time."):
        super().__init__(message)


class StorageError(AppError):
    code = "storage_error"
    status_code = 500


class ConflictError(AppError):
    """A concurrent claim for the same identity was recorded first."""
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


def _extract_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _render(status_code: int, body: dict, rid: str) -> JSONResponse:
    body["request_id"] = rid
    response = JSONResponse(status_code=status_code, content=body)
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = _extract_request_id(request)
    level = "error" if exc.status_code >= 500 else "warning"
    getattr(get_logger(), level)(
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    return _render(exc.status_code, exc.payload(), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    get_logger().error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _render(500, {"error": "Unexpected error", "code": "internal_error"}, rid)
