"""
Application errors.

Every failure the API reports on purpose is an AppError built from the
catalogue below, so clients always get the same envelope:

    {"error": {"code": ..., "message": ..., "recovery_action": ..., "details": ...}}
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# code -> (status, user message, recovery action)
ERROR_CODES: dict[str, tuple[int, str, str]] = {
    "RATE_LIMIT_EXCEEDED": (
        429,
        "Rate limit exceeded. Please try again later.",
        "Wait for the rate limit to reset",
    ),
    "NOT_FOUND": (
        404,
        "The requested resource was not found.",
        "Verify the repository exists and is accessible",
    ),
    "UNAUTHORIZED": (
        401,
        "Authentication required to access this resource.",
        "Please sign in and try again",
    ),
    "FORBIDDEN": (
        403,
        "You do not have permission to access this resource.",
        "Check your permissions or contact an administrator",
    ),
    "INVALID_INPUT": (
        400,
        "The provided input is invalid.",
        "Please check your input and try again",
    ),
    "CONFLICT": (
        409,
        "The resource already exists.",
        "Use the existing resource instead",
    ),
    "DATABASE_ERROR": (
        500,
        "A database error occurred. Please try again.",
        "If the problem persists, contact support",
    ),
    "EXTERNAL_API_ERROR": (
        502,
        "An external service is temporarily unavailable.",
        "Please try again in a few moments",
    ),
    "TIMEOUT_ERROR": (
        504,
        "The request took too long to complete.",
        "Please try again or try a smaller request",
    ),
    "INTERNAL_ERROR": (
        500,
        "An internal server error occurred.",
        "Please try again or contact support",
    ),
    "ANALYSIS_FAILED": (
        500,
        "Repository analysis failed.",
        "Try again with a different repository or contact support",
    ),
    "EXPORT_FAILED": (
        500,
        "Data export failed.",
        "Try again or try a different export format",
    ),
    "INVALID_CREDENTIALS": (
        401,
        "Invalid email or password.",
        "Please check your credentials and try again",
    ),
    "ACCOUNT_LOCKED": (
        403,
        "Your account has been temporarily locked due to multiple failed login attempts.",
        "Please try again later or reset your password",
    ),
    "INVALID_TOKEN": (
        400,
        "The link is invalid.",
        "Please request a new link",
    ),
    "TOKEN_EXPIRED": (
        400,
        "The link has expired.",
        "Please request a new link",
    ),
    "SESSION_EXPIRED": (
        401,
        "Your session has expired.",
        "Please sign in again",
    ),
    "PASSWORD_VALIDATION_ERROR": (
        400,
        "Password does not meet requirements.",
        "Password must be at least 8 characters long",
    ),
    "FEATURE_NOT_AVAILABLE": (
        403,
        "This feature is not available on your current plan.",
        "Upgrade your subscription to unlock it",
    ),
    "ANALYSIS_LIMIT_EXCEEDED": (
        429,
        "You have reached your daily analysis limit.",
        "Wait for the limit to reset or upgrade your plan",
    ),
    "BILLING_DISABLED": (
        503,
        "Billing is not configured on this server.",
        "Contact the administrator",
    ),
    "QUEUE_FULL": (
        503,
        "The analysis queue is full.",
        "Please retry in a few minutes",
    ),
}


class AppError(Exception):
    """An error with a stable code, an HTTP status and a user-facing message."""

    def __init__(
        self,
        code: str,
        message: str | None = None,
        details: dict | None = None,
        status_code: int | None = None,
        headers: dict | None = None,
    ):
        default_status, default_message, recovery_action = ERROR_CODES.get(
            code, ERROR_CODES["INTERNAL_ERROR"]
        )
        self.code = code
        self.message = message or default_message
        self.status_code = status_code or default_status
        self.recovery_action = recovery_action
        self.details = details
        self.headers = headers
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether repeating the same call could succeed."""
        return self.code in {
            "RATE_LIMIT_EXCEEDED",
            "EXTERNAL_API_ERROR",
            "TIMEOUT_ERROR",
            "DATABASE_ERROR",
            "INTERNAL_ERROR",
            "ANALYSIS_FAILED",
        }

    def to_dict(self) -> dict:
        body = {
            "code": self.code,
            "message": self.message,
            "recovery_action": self.recovery_action,
        }
        if self.details:
            body["details"] = self.details
        return body


def register_error_handlers(app: FastAPI, on_server_error=None) -> None:
    """Install the AppError handler. `on_server_error(request, exc)` sees every 5xx."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
            if on_server_error is not None:
                on_server_error(request, exc)
        else:
            logger.info(f"{exc.code} on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_dict()},
            headers=exc.headers,
        )
