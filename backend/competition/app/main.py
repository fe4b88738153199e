"""FastAPI application factory for the competition backend."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..db.base import create_engine, dispose_engine
from .config import settings
from .logging import get_logger, setup_logging
from .routes import accounts, admin, leaderboard, refresh, tradelocker
from .security import AuthorizationError

setup_logging()

logger = get_logger("competition.app")


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
    """Initialise and tear down shared application resources."""

    create_engine(settings.database_url, echo=settings.sqlalchemy_echo)
    try:
        yield
    finally:
        await dispose_engine()


async def _authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    logger.warning("unauthorized_request", path=request.url.path, method=request.method)
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Unauthorized"})


def create_app(*, api_prefix: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers should be mounted. When
        ``None`` the routers are mounted at the application root, which is what
        the test-suite uses.
    """

    app = FastAPI(title="Trading Competition", version="1.0", lifespan=_lifespan)

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(AuthorizationError, _authorization_error_handler)

    router_prefix = api_prefix.rstrip("/") if api_prefix else ""
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    for module in (refresh, tradelocker, accounts, leaderboard, admin):
        app.include_router(module.router, prefix=router_prefix)

    return app


app = create_app(api_prefix="/api")
