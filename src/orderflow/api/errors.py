"""Translation of fulfillment errors into HTTP errors."""

from fastapi import HTTPException, status

from orderflow.core.exceptions import (
    CarrierError,
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    NotFoundError,
    OrderflowError,
    PreconditionFailedError,
    WebhookSignatureError,
)

ERROR_STATUS_CODES: list[tuple[type[OrderflowError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PreconditionFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidWebhookPayloadError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (WebhookSignatureError, status.HTTP_401_UNAUTHORIZED),
    (CarrierError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(error: OrderflowError) -> HTTPException:
    """
    Map a fulfillment error onto an HTTPException.

    Unmapped errors become 500 responses; their message is not exposed.

    Args:
        error: Error raised by a service

    Returns:
        HTTPException with a ``{"message", "code"}`` detail
    """
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"message": error.message, "code": error.code},
            )

    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": "Failed to process request", "code": error.code},
    )
