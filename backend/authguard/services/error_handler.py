"""
Uniform error responses for authentication endpoints.

Every failure leaves the service in the same envelope:

    {
        "success": false,
        "error": {"type", "message", "code", "field"?, "details"?,
                  "suggestions", "retryAfter"?},
        "timestamp": "2024-01-01T00:00:00.000Z",
        "requestId": "req_<unix ms>_<base36>"
    }

AuthError instances are rendered from their pre-vetted fields. Any other
exception becomes INTERNAL_ERROR with the canned message: nothing from the
exception's text, type or traceback reaches the client. The full exception
is logged server-side under the request id.
"""

import logging
import re
import secrets
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import wraps
from typing import Any, ParamSpec

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from authguard.core.errors import AuthError, AuthErrorType
from authguard.services.security_logger import SecurityLogger
from authguard.utils.request import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

P = ParamSpec("P")

REQUEST_ID_HEADER = "X-Request-Id"
REQUEST_ID_PATTERN = re.compile(r"^req_\d{1,16}_[a-z0-9]{1,32}$")
_BASE36 = string.digits + string.ascii_lowercase


def generate_request_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"req_{int(clock() * 1000)}_{suffix}"


def is_valid_request_id(value: str | None) -> bool:
    return bool(value) and REQUEST_ID_PATTERN.fullmatch(value) is not None


def resolve_request_id(request: Request | None) -> str:
    """Request id for ``request``: the one already assigned, a valid inbound header, or a new one."""
    if request is None:
        return generate_request_id()

    assigned = getattr(request.state, "request_id", None)
    if is_valid_request_id(assigned):
        return assigned

    inbound = request.headers.get(REQUEST_ID_HEADER)
    if is_valid_request_id(inbound):
        return inbound

    return generate_request_id()


def _timestamp(clock: Callable[[], float]) -> str:
    now = datetime.fromtimestamp(clock(), tz=UTC)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class ErrorContext:
    operation: str
    user_id: str | None = None
    email: str | None = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    request_id: str | None = None


class AuthErrorHandler:
    """Turn exceptions into safe responses and record them as security events."""

    def __init__(
        self,
        security_logger: SecurityLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.security_logger = security_logger
        self.clock = clock

    async def handle_error(self, error: BaseException, context: ErrorContext) -> JSONResponse:
        request_id = context.request_id or generate_request_id(self.clock)

        if isinstance(error, AuthError):
            auth_error = error
            logger.warning(
                "%s failed [%s] %s: %s",
                context.operation, request_id, auth_error.code, auth_error.log_message,
            )
        else:
            logger.error(
                "Unhandled error in %s [%s]",
                context.operation, request_id, exc_info=error,
            )
            auth_error = AuthError(AuthErrorType.INTERNAL_ERROR)

        await self._record(auth_error, context, request_id)
        return self.build_error_response(auth_error, request_id)

    def build_error_response(self, auth_error: AuthError, request_id: str) -> JSONResponse:
        error_body: dict[str, Any] = {
            "type": auth_error.type.value,
            "message": auth_error.message,
            "code": auth_error.code,
        }
        if auth_error.field is not None:
            error_body["field"] = auth_error.field
        if auth_error.details is not None:
            error_body["details"] = auth_error.details
        error_body["suggestions"] = list(auth_error.suggestions)
        if auth_error.retry_after is not None:
            error_body["retryAfter"] = auth_error.retry_after

        headers = {REQUEST_ID_HEADER: request_id}
        if auth_error.retry_after is not None:
            headers["Retry-After"] = str(auth_error.retry_after)

        return JSONResponse(
            status_code=auth_error.status_code,
            content=jsonable_encoder({
                "success": False,
                "error": error_body,
                "timestamp": _timestamp(self.clock),
                "requestId": request_id,
            }),
            headers=headers,
        )

    async def _record(self, auth_error: AuthError, context: ErrorContext, request_id: str) -> None:
        if self.security_logger is None:
            return
        try:
            await self.security_logger.log_error(
                operation=context.operation,
                error_type=auth_error.code,
                request_id=request_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                user_id=context.user_id,
                email=context.email,
            )
        except Exception:
            logger.warning("Failed to record error event [%s]", request_id)

    def create_success_response(
        self,
        data: Any,
        message: str | None = None,
        request_id: str | None = None,
        status_code: int = 200,
    ) -> JSONResponse:
        request_id = request_id or generate_request_id(self.clock)
        body: dict[str, Any] = {"success": True, "data": data}
        if message is not None:
            body["message"] = message
        body["timestamp"] = _timestamp(self.clock)
        body["requestId"] = request_id

        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder(body),
            headers={REQUEST_ID_HEADER: request_id},
        )


def _find_request(args: tuple, kwargs: dict) -> Request | None:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    return next((arg for arg in args if isinstance(arg, Request)), None)


def with_auth_error_handling(
    handler: Callable[P, Awaitable[Any]],
    operation: str,
    error_handler: AuthErrorHandler | None = None,
) -> Callable[P, Awaitable[Any]]:
    """
    Wrap an endpoint so that any exception becomes a safe error response.

    The wrapped endpoint must take the ``Request`` (positionally or as
    ``request=``). Without an explicit ``error_handler`` the one on
    ``request.app.state.control_plane`` is used.

    Example:
        async def login(request: Request, body: LoginBody):
            ...

        router.post("/login")(with_auth_error_handling(login, "login"))
    """

    @wraps(handler)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
        try:
            return await handler(*args, **kwargs)
        except Exception as e:
            request = _find_request(args, kwargs)
            active_handler = error_handler
            if active_handler is None and request is not None and "app" in request.scope:
                plane = getattr(request.app.state, "control_plane", None)
                active_handler = plane.error_handler if plane is not None else None
            active_handler = active_handler or AuthErrorHandler()

            context = ErrorContext(
                operation=operation,
                request_id=resolve_request_id(request),
            )
            if request is not None:
                context.ip_address = get_client_ip(request)
                context.user_agent = get_user_agent(request)
                context.user_id = getattr(request.state, "user_id", None)
                context.email = getattr(request.state, "email", None)

            return await active_handler.handle_error(e, context)

    return wrapper


def auth_error_handling(operation: str, error_handler: AuthErrorHandler | None = None):
    """
    Decorator form of with_auth_error_handling.

    Usage:
        @router.get("/lockouts")
        @auth_error_handling("list_lockouts")
        async def list_lockouts(request: Request):
            ...
    """

    def decorator(handler: Callable[P, Awaitable[Any]]) -> Callable[P, Awaitable[Any]]:
        return with_auth_error_handling(handler, operation, error_handler)

    return decorator
