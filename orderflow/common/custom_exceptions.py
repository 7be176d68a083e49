from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import build_error, json_error

logger = get_logger("orderflow.errors")


class OrderflowError(Exception):
    """Base for every error the engine reports to its callers."""

    code = "ORDERFLOW_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, **self.details}


class ValidationError(OrderflowError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientStock(OrderflowError):
    code = "INSUFFICIENT_STOCK"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, variant_id: int, available: int, requested: int, product_name: Optional[str] = None):
        label = product_name or f"variant {variant_id}"
        super().__init__(
            f"Not enough stock for {label}: available={available}, requested={requested}",
            variant_id=variant_id, product_name=product_name,
            available=available, requested=requested,
        )
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        self.product_name = product_name


class IllegalTransition(OrderflowError):
    code = "ILLEGAL_TRANSITION"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, order_id: int, current_status: Optional[str], event: str):
        super().__init__(
            f"Order {order_id} in status {current_status} cannot accept event {event}",
            order_id=order_id, current_status=current_status, event=event,
        )
        self.order_id = order_id
        self.current_status = current_status
        self.event = event


class GatewayUnavailable(OrderflowError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, **details: Any):
        details.setdefault("retryable", True)
        super().__init__(message, **details)


class NotFound(OrderflowError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


async def orderflow_error_handler(request: Request, exc: OrderflowError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request.rejected",
        extra={"error_code": exc.code, "path": request.url.path, "method": request.method},
    )
    payload = build_error(code=exc.code, details=exc.to_dict())
    headers = {"Retry-After": "5"} if isinstance(exc, GatewayUnavailable) else None
    return json_error(payload, status_code=exc.status_code, headers=headers)


async def fallback_handler(request: Request, exc: Exception):
    logger.error(
        "unexpected.exception",
        extra={"path": request.url.path, "method": request.method},
        exc_info=exc,
    )
    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"})
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "request.validation_failed",
        extra={"errors": exc.errors(), "path": request.url.path},
    )
    payload = build_error(code="UNPROCESSABLE_ENTITY", details={"message": "invalid request", "errors": exc.errors()})
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):
    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message": exc.detail})
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(OrderflowError, orderflow_error_handler)

    app.add_exception_handler(
        Exception, # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.add_exception_handler(HTTPException, http_exception_handler)
