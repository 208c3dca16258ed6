"""Tests for the authentication error taxonomy."""

import pytest

from authguard.core.errors import (
    AUTH_ERROR_MESSAGES,
    AUTH_ERROR_STATUS,
    AuthError,
    AuthErrorType,
    account_locked_error,
    from_type,
    password_strength_error,
    rate_limit_error,
    validation_error,
)


class TestStatusMapping:
    @pytest.mark.parametrize(
        "error_type",
        [
            AuthErrorType.VALIDATION_ERROR,
            AuthErrorType.EMAIL_FORMAT,
            AuthErrorType.PASSWORD_STRENGTH,
            AuthErrorType.INVALID_CREDENTIALS,
            AuthErrorType.EMAIL_NOT_VERIFIED,
            AuthErrorType.TOKEN_EXPIRED,
            AuthErrorType.TOKEN_INVALID,
        ],
    )
    def test_bad_request_types(self, error_type):
        assert AuthError(error_type).status_code == 400

    def test_protective_and_system_types(self):
        assert AuthError(AuthErrorType.SUSPICIOUS_ACTIVITY).status_code == 403
        assert AuthError(AuthErrorType.ACCOUNT_LOCKED).status_code == 423
        assert AuthError(AuthErrorType.RATE_LIMIT_EXCEEDED).status_code == 429
        assert AuthError(AuthErrorType.INTERNAL_ERROR).status_code == 500
        assert AuthError(AuthErrorType.SERVICE_UNAVAILABLE).status_code == 503

    def test_every_type_has_status_and_messages(self):
        for error_type in AuthErrorType:
            assert error_type in AUTH_ERROR_STATUS
            assert AUTH_ERROR_MESSAGES[error_type]["suggestions"]


class TestAuthError:
    def test_defaults_from_message_table(self):
        error = AuthError(AuthErrorType.TOKEN_INVALID)

        assert error.code == "TOKEN_INVALID"
        assert error.message == AUTH_ERROR_MESSAGES[AuthErrorType.TOKEN_INVALID]["user"]
        assert error.suggestions == AUTH_ERROR_MESSAGES[AuthErrorType.TOKEN_INVALID]["suggestions"]
        assert error.retry_after is None

    def test_suggestions_are_copied(self):
        error = AuthError(AuthErrorType.TOKEN_INVALID)
        error.suggestions.append("mutated")

        assert "mutated" not in AUTH_ERROR_MESSAGES[AuthErrorType.TOKEN_INVALID]["suggestions"]

    def test_log_message_is_exception_text(self):
        error = AuthError(AuthErrorType.INVALID_CREDENTIALS, log_message="user 42 bad password")
        assert str(error) == "user 42 bad password"
        assert "42" not in error.message


class TestFactories:
    def test_account_locked_error(self):
        error = account_locked_error(65)

        assert error.status_code == 423
        assert error.retry_after == 65 * 60
        assert error.details == {"lockoutDurationMinutes": 65}
        assert "1 hour and 5 minutes" in error.message

    def test_account_locked_error_explicit_retry_after(self):
        error = account_locked_error(30, retry_after=1800)
        assert error.retry_after == 1800
        assert "30 minutes" in error.message

    def test_rate_limit_error(self):
        error = rate_limit_error(900, "login")

        assert error.status_code == 429
        assert error.retry_after == 900
        assert error.message == "Too many login attempts. Please try again in 15 minutes."

    def test_validation_error_uses_first_message(self):
        error = validation_error({"email": ["Email is required"]}, field="email")

        assert error.message == "Email is required"
        assert error.field == "email"
        assert error.details == {"email": ["Email is required"]}

    def test_password_strength_error_lists_problems(self):
        error = password_strength_error(["Add a number"])

        assert error.field == "password"
        assert error.details == {"requirements": ["Add a number"]}
        assert "• Add a number" in error.suggestions

    def test_from_type_uses_canned_texts(self):
        error = from_type(AuthErrorType.TOKEN_EXPIRED, log_message="reset token expired")

        assert error.message == AUTH_ERROR_MESSAGES[AuthErrorType.TOKEN_EXPIRED]["user"]
        assert error.log_message == "reset token expired"
        assert error.status_code == 400
