"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from decimal import Decimal

from creditgate.models.api import ErrorCode


class GatewayError(Exception):
    """Base exception for all credit gateway errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR


class AuthRequiredError(GatewayError):
    """Raised when no usable credential chain exists for the user."""

    code = ErrorCode.AUTH_REQUIRED

    def __init__(self, user_id: str, reason: str = "authentication required") -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Authentication required for user {user_id}: {reason}")


class InsufficientBalanceError(GatewayError):
    """Raised when the observed balance cannot cover the required amount."""

    code = ErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, balance: Decimal, required: Decimal) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance. Balance: {balance}, Required: {required}")


class RemoteUnavailableError(GatewayError):
    """Raised when the metering authority is unreachable or timed out."""

    code = ErrorCode.SERVICE_UNAVAILABLE

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Remote authority unavailable: {message}")


class RemoteRequestError(GatewayError):
    """Raised when the metering authority rejects a request (non-auth 4xx)."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Remote authority rejected request ({status_code}): {message}")


class ConcurrencyExhaustedError(GatewayError):
    """Raised when a local ledger write could not land after bounded retries."""

    code = ErrorCode.CONCURRENCY_EXHAUSTED

    def __init__(self, user_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"Failed to update balance for user {user_id} after {attempts} attempts"
        )


class TokenExchangeError(GatewayError):
    """Raised when the token endpoint refuses or garbles a refresh grant."""

    code = ErrorCode.AUTH_REQUIRED

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Token exchange failed: {message}")


class DecryptionError(GatewayError):
    """Raised when a stored secret cannot be decrypted."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Decryption failed: {message}")


class WriteConflictError(GatewayError):
    """Raised when a store write keeps colliding with concurrent writers."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent write conflict for {resource}")


GENERIC_MESSAGE = "Something went wrong. Please try again."


def error_code_for(error: BaseException) -> ErrorCode:
    """Caller-facing code for any exception."""
    if isinstance(error, GatewayError):
        return error.code
    return ErrorCode.INTERNAL_ERROR


def user_message(error: BaseException) -> str:
    """
    Message safe to show an end user.

    Only auth and insufficient balance are actionable; everything else
    collapses to a generic retry message and the detail stays in the logs.
    """
    if isinstance(error, AuthRequiredError | TokenExchangeError):
        return "Your session has expired. Please sign in again."
    if isinstance(error, InsufficientBalanceError):
        return f"Insufficient credits. Balance: {error.balance}, Required: {error.required}"
    return GENERIC_MESSAGE
