"""
Typed errors for the stock ledger.
Every error carries a stable code and the HTTP status it is reported with.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


class MovementError(Exception):
    code = "movement_error"
    status_code = 500
    default_message = "Movement operation failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidArgument(MovementError):
    code = "invalid_argument"
    status_code = 400
    default_message = "Invalid argument"


class NotFound(MovementError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class InsufficientStock(MovementError):
    code = "insufficient_stock"
    status_code = 422
    default_message = "Insufficient stock"

    def __init__(self, product_id: int, requested, available=None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for product {product_id}: requested {requested}")


class ConflictRetryable(MovementError):
    code = "conflict_retryable"
    status_code = 409
    default_message = "Product is being modified concurrently, retry the request"


class StorageUnavailable(MovementError):
    code = "storage_unavailable"
    status_code = 503
    default_message = "Storage unavailable"


def _error_body(code: str, message: str) -> dict:
    return {"detail": message, "code": code}


def setup_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(MovementError)
    async def movement_error_handler(request: Request, exc: MovementError):
        if isinstance(exc, StorageUnavailable):
            logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc.message)
        headers = {"Retry-After": "1"} if isinstance(exc, ConflictRetryable) else None
        return JSONResponse(
            content=_error_body(exc.code, exc.message),
            status_code=exc.status_code,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return JSONResponse(
            content=_error_body(InvalidArgument.code, "; ".join(messages) or InvalidArgument.default_message),
            status_code=InvalidArgument.status_code,
        )
