import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authguard import __version__
from authguard.api.security import router as security_router
from authguard.core.config import Settings, get_settings
from authguard.core.errors import AuthError
from authguard.core.logging import setup_logging
from authguard.services.control_plane import AuthSecurityControlPlane
from authguard.services.error_handler import REQUEST_ID_HEADER, ErrorContext, resolve_request_id
from authguard.utils.request import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    control_plane: AuthSecurityControlPlane | None = None,
) -> FastAPI:
    """
    Build the application.

    When ``control_plane`` is given it is used as-is and left open on
    shutdown; otherwise the lifespan builds one from ``settings`` and
    closes it.
    """
    settings = settings or (control_plane.settings if control_plane else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        setup_logging(settings)

        owned = control_plane is None
        if owned:
            logger.info("Starting security control plane (%s)", settings.ENVIRONMENT)
            app.state.control_plane = await AuthSecurityControlPlane.from_settings(settings)
            await app.state.control_plane.warm_cache()

        yield

        if owned:
            await app.state.control_plane.close()

    app = FastAPI(
        title=settings.APP_NAME,
        version=__version__,
        lifespan=lifespan,
        redirect_slashes=False,
    )
    if control_plane is not None:
        app.state.control_plane = control_plane

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Assign the request id and bind it to every log entry for this request."""
        request_id = resolve_request_id(request)
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """AuthErrors raised outside a wrapped endpoint, e.g. from dependencies."""
        plane: AuthSecurityControlPlane = request.app.state.control_plane
        return await plane.error_handler.handle_error(exc, ErrorContext(
            operation=request.url.path,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            request_id=resolve_request_id(request),
        ))

    @app.get("/health")
    async def health_check(request: Request):
        """Returns 200 while the cache store answers, 503 otherwise."""
        health = await request.app.state.control_plane.health_check()
        status_code = 503 if health["status"] == "unhealthy" else 200
        return JSONResponse(content=health, status_code=status_code)

    app.include_router(security_router, prefix="/api")

    return app
