import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from authguard.services.control_plane import AuthSecurityControlPlane


def get_control_plane(request: Request) -> AuthSecurityControlPlane:
    return request.app.state.control_plane


async def require_admin_key(
    plane: Annotated[AuthSecurityControlPlane, Depends(get_control_plane)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> str:
    """Check the X-Admin-Key header against the configured key."""
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin key required",
        )

    if not secrets.compare_digest(x_admin_key.encode(), plane.settings.ADMIN_API_KEY.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )

    return "admin"
