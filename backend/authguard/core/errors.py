"""
Authentication error taxonomy.

Every failure an auth endpoint can report to a client is one of the
AuthErrorType values below. User-facing messages and suggestions are fixed,
pre-vetted texts; anything internal goes to ``log_message`` and never leaves
the server.
"""
import math
from enum import Enum
from typing import Any

from fastapi import status


class AuthErrorType(str, Enum):
    """Standard authentication error codes."""

    # Bad input (safe to be specific)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMAIL_FORMAT = "EMAIL_FORMAT"
    PASSWORD_STRENGTH = "PASSWORD_STRENGTH"

    # Auth preconditions
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"

    # One-time token lifecycle
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"

    # Protective throttling (carry retry_after)
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Security alert
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

    # System failure (always generic)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


AUTH_ERROR_STATUS: dict[AuthErrorType, int] = {
    AuthErrorType.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.EMAIL_FORMAT: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.PASSWORD_STRENGTH: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.INVALID_CREDENTIALS: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.EMAIL_NOT_VERIFIED: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.TOKEN_EXPIRED: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.TOKEN_INVALID: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.SUSPICIOUS_ACTIVITY: status.HTTP_403_FORBIDDEN,
    AuthErrorType.ACCOUNT_LOCKED: status.HTTP_423_LOCKED,
    AuthErrorType.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorType.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    AuthErrorType.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


AUTH_ERROR_MESSAGES: dict[AuthErrorType, dict[str, Any]] = {
    AuthErrorType.INVALID_CREDENTIALS: {
        "user": "Invalid email or password. Please check your credentials and try again.",
        "log": "Authentication failed - invalid credentials provided",
        "suggestions": [
            "Double-check your email address",
            "Verify your password is correct",
            "Try resetting your password if you've forgotten it",
        ],
    },
    AuthErrorType.ACCOUNT_LOCKED: {
        "user": (
            "Your account has been temporarily locked due to multiple failed login attempts. "
            "Please try again later or contact support."
        ),
        "log": "Account locked due to failed login attempts",
        "suggestions": [
            "Wait for the lockout period to expire",
            "Contact support if you believe this is an error",
            "Reset your password to unlock your account",
        ],
    },
    AuthErrorType.EMAIL_NOT_VERIFIED: {
        "user": "Please verify your email address before logging in. Check your inbox for a verification link.",
        "log": "Login attempt with unverified email",
        "suggestions": [
            "Check your email inbox and spam folder",
            "Click the verification link in the email",
            "Request a new verification email if needed",
        ],
    },
    AuthErrorType.RATE_LIMIT_EXCEEDED: {
        "user": "Too many requests. Please wait before trying again.",
        "log": "Rate limit exceeded",
        "suggestions": [
            "Wait a few minutes before trying again",
            "Avoid rapid repeated attempts",
            "Contact support if you continue to have issues",
        ],
    },
    AuthErrorType.VALIDATION_ERROR: {
        "user": "Please check your input and try again.",
        "log": "Validation error in request",
        "suggestions": [
            "Review the highlighted fields",
            "Ensure all required information is provided",
            "Check that your input meets the specified requirements",
        ],
    },
    AuthErrorType.PASSWORD_STRENGTH: {
        "user": "Password does not meet security requirements.",
        "log": "Password strength validation failed",
        "suggestions": [
            "Use at least 8 characters",
            "Include uppercase and lowercase letters",
            "Add at least one number and special character",
            "Avoid common passwords and personal information",
        ],
    },
    AuthErrorType.EMAIL_FORMAT: {
        "user": "Please enter a valid email address.",
        "log": "Invalid email format provided",
        "suggestions": [
            "Check for typos in your email address",
            "Ensure the email format is correct (user@domain.com)",
            "Remove any extra spaces",
        ],
    },
    AuthErrorType.INTERNAL_ERROR: {
        "user": "We're experiencing technical difficulties. Please try again in a few moments.",
        "log": "Internal server error occurred",
        "suggestions": [
            "Try again in a few minutes",
            "Contact support if the problem persists",
            "Check our status page for any known issues",
        ],
    },
    AuthErrorType.SERVICE_UNAVAILABLE: {
        "user": "Service is temporarily unavailable. Please try again later.",
        "log": "Service unavailable",
        "suggestions": [
            "Try again in a few minutes",
            "Check our status page for updates",
            "Contact support if the issue persists",
        ],
    },
    AuthErrorType.SUSPICIOUS_ACTIVITY: {
        "user": "Unusual activity detected. For security reasons, this action has been blocked.",
        "log": "Suspicious activity detected and blocked",
        "suggestions": [
            "Try again from a trusted device or location",
            "Contact support to verify your identity",
            "Check for any unauthorized access to your account",
        ],
    },
    AuthErrorType.TOKEN_EXPIRED: {
        "user": "This link has expired. Please request a new one.",
        "log": "Expired token used",
        "suggestions": [
            "Request a new verification or reset link",
            "Check that you're using the most recent email",
            "Links typically expire after 24 hours for security",
        ],
    },
    AuthErrorType.TOKEN_INVALID: {
        "user": "This link is invalid or has already been used.",
        "log": "Invalid or used token provided",
        "suggestions": [
            "Request a new verification or reset link",
            "Ensure you're using the complete link from the email",
            "Check that the link hasn't been used already",
        ],
    },
}


class AuthError(Exception):
    """
    Authentication error with a user-safe message.

    Usage:
        raise AuthError(
            AuthErrorType.TOKEN_INVALID,
            log_message=f"reset token {token_id} not found",
        )

    ``message``, ``field``, ``details`` and ``suggestions`` are sent to the
    client as-is, so they must never contain internal state. Put internal
    context in ``log_message``.
    """

    def __init__(
        self,
        type: AuthErrorType,
        message: str | None = None,
        log_message: str | None = None,
        status_code: int | None = None,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        retry_after: int | None = None,
        suggestions: list[str] | None = None,
    ):
        config = AUTH_ERROR_MESSAGES[type]
        self.type = type
        self.message = message or config["user"]
        self.log_message = log_message or config["log"]
        self.status_code = status_code or AUTH_ERROR_STATUS[type]
        self.field = field
        self.details = details
        self.retry_after = retry_after
        self.suggestions = list(suggestions) if suggestions is not None else list(config["suggestions"])
        super().__init__(self.log_message)

    @property
    def code(self) -> str:
        return self.type.value


class StoreUnavailableError(Exception):
    """Raised inside the cache store when the backing server cannot be reached."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cache store unavailable during {operation}")


# Convenience constructors for common errors

def from_type(type: AuthErrorType, **kwargs: Any) -> AuthError:
    """Create an AuthError carrying the canned texts for its type."""
    return AuthError(type, **kwargs)


def validation_error(errors: dict[str, Any], field: str | None = None) -> AuthError:
    """Create a 400 VALIDATION_ERROR from a field -> messages mapping."""
    first_error = next(iter(errors.values()), None) if errors else None
    message = first_error[0] if isinstance(first_error, list) and first_error else first_error

    return AuthError(
        AuthErrorType.VALIDATION_ERROR,
        message=message if isinstance(message, str) else "Validation failed",
        log_message=f"Validation error: {errors}",
        field=field,
        details=errors,
    )


def rate_limit_error(retry_after: int, operation: str) -> AuthError:
    """Create a 429 RATE_LIMIT_EXCEEDED error with retry information."""
    minutes = max(1, math.ceil(retry_after / 60))
    return AuthError(
        AuthErrorType.RATE_LIMIT_EXCEEDED,
        message=f"Too many {operation} attempts. Please try again in {minutes} minutes.",
        log_message=f"Rate limit exceeded for {operation}",
        retry_after=retry_after,
    )


def _format_duration(total_minutes: int) -> str:
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        text = f"{hours} hour{'s' if hours > 1 else ''}"
        if minutes > 0:
            text += f" and {minutes} minute{'s' if minutes > 1 else ''}"
        return text
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def account_locked_error(lockout_minutes: int, retry_after: int | None = None) -> AuthError:
    """
    Create a 423 ACCOUNT_LOCKED error.

    Args:
        lockout_minutes: Remaining lock time, used for the message
        retry_after: Exact remaining seconds; defaults to lockout_minutes * 60
    """
    return AuthError(
        AuthErrorType.ACCOUNT_LOCKED,
        message=(
            f"Account locked for {_format_duration(lockout_minutes)} "
            f"due to multiple failed login attempts."
        ),
        log_message=f"Account locked for {lockout_minutes} minutes",
        retry_after=retry_after if retry_after is not None else lockout_minutes * 60,
        details={"lockoutDurationMinutes": lockout_minutes},
    )


def password_strength_error(problems: list[str]) -> AuthError:
    """Create a 400 PASSWORD_STRENGTH error listing unmet requirements."""
    return AuthError(
        AuthErrorType.PASSWORD_STRENGTH,
        log_message=f"Password validation failed: {', '.join(problems)}",
        field="password",
        details={"requirements": problems},
        suggestions=[
            *AUTH_ERROR_MESSAGES[AuthErrorType.PASSWORD_STRENGTH]["suggestions"],
            *(f"• {problem}" for problem in problems),
        ],
    )
