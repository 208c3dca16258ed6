"""Admin endpoints for lockouts, feature flags and security reporting."""

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from authguard.api.deps import get_control_plane, require_admin_key
from authguard.core.errors import AuthError, AuthErrorType, validation_error
from authguard.models.security_event import SecurityEventType
from authguard.services.control_plane import AuthSecurityControlPlane
from authguard.services.error_handler import auth_error_handling, resolve_request_id
from authguard.services.security_logger import SecurityEventFilter
from authguard.utils.request import get_client_ip, get_user_agent

router = APIRouter(
    prefix="/security",
    tags=["security"],
    dependencies=[Depends(require_admin_key)],
)

Plane = Annotated[AuthSecurityControlPlane, Depends(get_control_plane)]


class FeatureFlagUpdate(BaseModel):
    enabled: bool | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)
    enabled_users: set[str] | None = None
    enabled_roles: set[str] | None = None
    environment: set[str] | None = None
    description: str | None = None


class UnlockRequest(BaseModel):
    admin_id: str | None = None


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@router.get("/lockouts")
@auth_error_handling("list_lockouts")
async def list_lockouts(request: Request, plane: Plane):
    now = plane.lockout.now()
    lockouts = [
        {**record.to_dict(), "remainingSeconds": int(record.remaining_seconds(now))}
        for record in await plane.lockout.get_active_lockouts()
    ]
    return plane.error_handler.create_success_response(
        {"lockouts": lockouts, "total": len(lockouts)},
        request_id=resolve_request_id(request),
    )


@router.post("/lockouts/{email}/unlock")
@auth_error_handling("unlock_account")
async def unlock_account(request: Request, email: str, plane: Plane, body: UnlockRequest | None = None):
    was_locked = await plane.login_protection.unlock(
        email,
        admin_id=body.admin_id if body else None,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return plane.error_handler.create_success_response(
        {"email": email, "wasLocked": was_locked},
        message="Account unlocked",
        request_id=resolve_request_id(request),
    )


@router.get("/flags")
@auth_error_handling("list_feature_flags")
async def list_flags(request: Request, plane: Plane):
    flags = await plane.feature_flags.get_all_flags()
    return plane.error_handler.create_success_response(
        {"flags": [flag.model_dump(mode="json") for flag in flags]},
        request_id=resolve_request_id(request),
    )


@router.patch("/flags/{name}")
@auth_error_handling("update_feature_flag")
async def update_flag(request: Request, name: str, update: FeatureFlagUpdate, plane: Plane):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise validation_error({"body": ["No changes supplied"]})

    try:
        flag = await plane.feature_flags.update_flag(name, **changes)
    except ValueError as e:
        raise AuthError(
            AuthErrorType.VALIDATION_ERROR,
            message="Feature flag update rejected.",
            log_message=str(e),
            field="name",
        ) from e

    return plane.error_handler.create_success_response(
        flag.model_dump(mode="json"),
        message="Feature flag updated",
        request_id=resolve_request_id(request),
    )


@router.get("/report")
@auth_error_handling("security_report")
async def security_report(
    request: Request,
    plane: Plane,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
):
    end = _utc(end) if end else plane.lockout.now()
    start = _utc(start) if start else end - timedelta(hours=24)
    if start > end:
        raise validation_error({"start": ["start must be before end"]}, field="start")

    report = await plane.security_logger.generate_security_report(start, end)
    return plane.error_handler.create_success_response(report, request_id=resolve_request_id(request))


@router.get("/events")
@auth_error_handling("list_security_events")
async def list_events(
    request: Request,
    plane: Plane,
    user_id: str | None = Query(None),
    email: str | None = Query(None),
    event_type: SecurityEventType | None = Query(None),
    success: bool | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    events = await plane.security_logger.get_security_events(SecurityEventFilter(
        user_id=user_id,
        email=email,
        event_type=event_type,
        success=success,
        limit=limit,
        offset=offset,
    ))
    return plane.error_handler.create_success_response(
        {"events": [event.to_dict() for event in events]},
        request_id=resolve_request_id(request),
    )


@router.get("/health")
@auth_error_handling("security_health")
async def security_health(request: Request, plane: Plane):
    return plane.error_handler.create_success_response(
        await plane.health_check(),
        request_id=resolve_request_id(request),
    )


@router.post("/maintenance/cleanup")
@auth_error_handling("security_cleanup")
async def run_cleanup(request: Request, plane: Plane, older_than_days: int = Query(90, ge=1)):
    return plane.error_handler.create_success_response(
        await plane.cleanup(older_than_days),
        request_id=resolve_request_id(request),
    )


@router.post("/maintenance/warm-cache")
@auth_error_handling("security_warm_cache")
async def run_warm_cache(request: Request, plane: Plane):
    return plane.error_handler.create_success_response(
        await plane.warm_cache(),
        request_id=resolve_request_id(request),
    )
