import logging

from fastapi import HTTPException

from creatorpay.core.errors import BillingError, GatewayTransient, PaymentInProgress

logger = logging.getLogger(__name__)


def http_error(exc: BillingError) -> HTTPException:
    """Client-facing error for a billing failure; internal detail stays in the logs."""
    if exc.status_code >= 500:
        logger.error("billing failure %s: %s", type(exc).__name__, exc)
    headers = {"Retry-After": "30"} if isinstance(exc, (GatewayTransient, PaymentInProgress)) else None
    return HTTPException(status_code=exc.status_code, detail=exc.public_message, headers=headers)
