from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hierarchy_authz.db.init_db import init_db
from hierarchy_authz.db.session import build_engine
from hierarchy_authz.logging_config import configure_app_logging
from hierarchy_authz.routers import admin, health, session
from hierarchy_authz.security.dependencies import enforce_authz
from hierarchy_authz.security.errors import AuthenticationError, AuthzError
from hierarchy_authz.security.factory import AuthzStack, build_stack
from hierarchy_authz.settings import get_settings

logger = logging.getLogger(__name__)


def create_app(stack: AuthzStack | None = None) -> FastAPI:
    """
    Build the application.

    Passing ``stack`` skips database and collaborator setup; tests use this
    to run the HTTP layer against an in-memory stack.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        authz = stack
        if authz is None:
            settings = get_settings()
            configure_app_logging(settings.log_level)
            logger.info("App startup beginning profile=%s", settings.profile)

            db_engine = build_engine(settings)
            init_db(db_engine)
            authz = build_stack(settings, db_engine)

        app.state.authz = authz
        app.state.session_factory = authz.session_factory
        authz.sweeper.start()

        yield

        # Shutdown
        authz.sweeper.stop()
        logger.info("App shutdown complete")

    # Global dependency: enforces decorator metadata on every matched route.
    app = FastAPI(title="hierarchy-authz", dependencies=[Depends(enforce_authz)], lifespan=lifespan)

    @app.exception_handler(AuthzError)
    async def authz_error_handler(request: Request, exc: AuthzError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed path=%s error=%s", request.url.path, exc)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.message, "error": type(exc).__name__},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    app.include_router(health.router)
    app.include_router(session.router)
    app.include_router(admin.router)

    return app


app = create_app()
