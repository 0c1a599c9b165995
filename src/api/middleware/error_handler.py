"""Global error handling middleware and the domain error taxonomy."""

import logging
import traceback
from typing import Any, Callable

from fastapi import HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from src.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors.

    Use this class to raise application-specific errors that should
    be returned to the client with a specific status code and message.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str = "api_error",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code to return.
            error_type: Error category/type for client handling.
            details: Optional additional error details.
        """
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.details = details
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, message: str = "Resource not found", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="not_found",
            details=details,
        )


class ValidationError(APIError):
    """Request validation error."""

    def __init__(self, message: str = "Validation error", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_type="validation_error",
            details=details,
        )


class AuthenticationError(APIError):
    """Authentication failure error."""

    def __init__(self, message: str = "Authentication required", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_type="authentication_error",
            details=details,
        )


class AuthorizationError(APIError):
    """Authorization failure error."""

    def __init__(self, message: str = "Access denied", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_type="authorization_error",
            details=details,
        )


# Cart errors


class NoIdentityError(APIError):
    """Cart operation attempted with neither a user nor a guest session."""

    def __init__(self, message: str = "A signed-in user or guest session is required to use the cart") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_type="no_identity",
        )


class VariantNotFoundError(APIError):
    """Add-to-cart referenced a variant that does not exist."""

    def __init__(self, variant_id: Any = None) -> None:
        super().__init__(
            message="Could not find the selected variant",
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="variant_not_found",
            details=[{"loc": ["variant_id"], "msg": str(variant_id), "type": "not_found"}] if variant_id else None,
        )
        self.variant_id = variant_id


class TransactionCreateFailedError(APIError):
    """The pending cart transaction could not be created."""

    def __init__(self, message: str = "Could not create shopping cart, please try again") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="transaction_create_failed",
        )


class CartWriteFailedError(APIError):
    """A cart write failed part way through an operation.

    ``step`` names the write that failed. Earlier writes are not rolled
    back; a later fetch of the cart reconciles the aggregates.
    """

    def __init__(self, step: str, message: str = "Could not update cart, please try again") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="cart_write_failed",
            details=[{"loc": ["step"], "msg": step, "type": "cart_write_failed"}],
        )
        self.step = step


class CartReadFailedError(APIError):
    """The cart could not be loaded."""

    def __init__(self, message: str = "Could not load cart, please try again") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="cart_read_failed",
        )


# Payment errors


class InvalidSignatureError(APIError):
    """Inbound webhook failed signature verification."""

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="invalid_signature",
        )


class PaymentProviderError(APIError):
    """The payment provider rejected or failed a request."""

    def __init__(self, message: str = "Payment provider request failed, please try again") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_type="payment_provider_error",
        )


class PaymentAmountMismatchError(APIError):
    """A succeeded payment does not cover the transaction it references."""

    def __init__(self, payment_intent_id: str, expected: str, received: str) -> None:
        super().__init__(
            message=f"Payment {payment_intent_id} settled {received}, transaction expects {expected}",
            status_code=status.HTTP_409_CONFLICT,
            error_type="payment_amount_mismatch",
            details=[
                {"loc": ["expected"], "msg": expected, "type": "payment_amount_mismatch"},
                {"loc": ["received"], "msg": received, "type": "payment_amount_mismatch"},
            ],
        )
        self.payment_intent_id = payment_intent_id


class WebhookProcessingError(APIError):
    """A stored webhook event could not be reconciled."""

    def __init__(self, event_id: str, message: str = "Webhook event could not be processed") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="webhook_processing_failed",
            details=[{"loc": ["event_id"], "msg": event_id, "type": "webhook_processing_failed"}],
        )
        self.event_id = event_id


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: list[dict[str, Any]] | None = None,
    request_id: str | None = None,
) -> JSONResponse:
    """Create a standardized JSON error response.

    Args:
        error_type: Error category for client handling.
        message: Human-readable error description.
        status_code: HTTP status code.
        details: Optional error details.
        request_id: Optional request ID for tracing.

    Returns:
        JSONResponse: Formatted error response.
    """
    error_response = ErrorResponse.from_exception(
        error_type=error_type,
        message=message,
        details=details,
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True),
    )


async def error_handler_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Middleware to catch and format all exceptions.

    Domain errors become their status code and generic message; anything
    else is logged with its stack trace and returned as a 500.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the successful response or formatted error response.
    """
    request_id = request.headers.get("X-Request-ID")

    try:
        return await call_next(request)

    except APIError as e:
        log = logger.error if e.status_code >= 500 else logger.warning
        log(
            "API error: %s - %s",
            e.error_type,
            e.message,
            extra={"request_id": request_id, "status_code": e.status_code},
        )
        return create_error_response(
            error_type=e.error_type,
            message=e.message,
            status_code=e.status_code,
            details=e.details,
            request_id=request_id,
        )

    except HTTPException as e:
        logger.warning(
            "HTTP exception: %s - %s",
            e.status_code,
            e.detail,
            extra={"request_id": request_id},
        )
        return create_error_response(
            error_type="http_error",
            message=str(e.detail),
            status_code=e.status_code,
            request_id=request_id,
        )

    except Exception as e:
        logger.error(
            "Unhandled exception: %s\n%s",
            str(e),
            traceback.format_exc(),
            extra={"request_id": request_id},
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            request_id=request_id,
        )
