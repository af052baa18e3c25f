"""
Exception handlers - map gateway errors to HTTP responses.

Only auth-required and insufficient-balance carry actionable messages;
everything else is a generic retry message with the detail in the log.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from creditgate.config import settings
from creditgate.exceptions import (
    AuthRequiredError,
    GatewayError,
    InsufficientBalanceError,
    user_message,
)
from creditgate.models.api import ErrorCode, ErrorResponse

logger = get_logger(__name__)

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INSUFFICIENT_BALANCE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CONCURRENCY_EXHAUSTED: status.HTTP_409_CONFLICT,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def build_error_response(error: GatewayError) -> ErrorResponse:
    """Response body for a gateway error."""
    body = ErrorResponse(error=error.code, message=user_message(error))
    if isinstance(error, AuthRequiredError):
        body.redirect_url = f"/oauth/{settings.oauth_provider}"
    elif isinstance(error, InsufficientBalanceError):
        body.balance = error.balance
        body.required = error.required
    return body


async def gateway_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle every GatewayError subclass."""
    assert isinstance(exc, GatewayError)
    status_code = STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "gateway_error",
        path=request.url.path,
        error_code=exc.code.value,
        error_type=type(exc).__name__,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content=build_error_response(exc).model_dump(mode="json", exclude_none=True),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the gateway error handlers on an app."""
    app.add_exception_handler(GatewayError, gateway_error_handler)
