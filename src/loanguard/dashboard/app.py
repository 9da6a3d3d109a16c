"""FastAPI application factory with exception mapping and WebSocket hub."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from loanguard.dashboard.routes import api, ws
from loanguard.dashboard.routes.ws import DashboardHub
from loanguard.exceptions import (
    LendingError,
    NotFoundError,
    PersistenceError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from loanguard.logging import bind_request_context, clear_request_context, get_logger

logger = get_logger(__name__)

#: Most specific class first; LendingError catches the rest.
_STATUS_CODES: list[tuple[type[LendingError], int]] = [
    (NotFoundError, 404),
    (ValidationFailedError, 400),
    (UpstreamUnavailableError, 502),
    (PersistenceError, 500),
]


def status_code_for(exc: LendingError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def _lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    else:
        logger.info(
            "request_rejected",
            path=request.url.path,
            status_code=status_code,
            error=str(exc),
        )
    return JSONResponse(content={"message": str(exc)}, status_code=status_code)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed", path=request.url.path)
    return JSONResponse(content={"message": "Internal server error"}, status_code=500)


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic and to put
                  the services on app.state.

    Returns:
        Configured FastAPI application with REST and WebSocket routes.
    """
    app = FastAPI(
        title="LoanGuard Lending API",
        lifespan=lifespan,
    )

    # Store WebSocket hub on app state for access from route handlers
    app.state.hub = DashboardHub()
    app.state.update_interval = 5

    # Wired by main.py lifespan (or directly by tests)
    app.state.default_user_id = None
    app.state.aggregator = None

    app.add_exception_handler(LendingError, _lending_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-Id") or uuid4().hex[:12]
        bind_request_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-Id"] = request_id
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # Register routers
    app.include_router(api.router, prefix="/api")
    app.include_router(ws.router)

    return app
