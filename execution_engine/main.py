import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from execution_engine.config import settings
from execution_engine.db.base import engine, init_db
from execution_engine.errors import (
    ExecutionValidationError,
    GuardrailCapError,
    InvalidTransitionError,
    NotFoundError,
    ProviderConfigError,
    ProviderError,
)
from execution_engine.routers import ad_accounts, ads_operator, outbox, webhooks

logger = logging.getLogger(__name__)


def _is_schema_mismatch_programming_error(exc: ProgrammingError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "42703":
        return True
    message = str(orig or exc).lower()
    return any(marker in message for marker in ("undefined column", "does not exist", "no such column"))


def _error(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"ok": False, "error": message})


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if settings.DATABASE_URL.startswith("sqlite"):
        # Local and test databases are created from the models; Postgres goes through alembic.
        init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Outbound Execution Engine",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException) -> ORJSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(ExecutionValidationError)
    async def validation_error_handler(_request: Request, exc: ExecutionValidationError) -> ORJSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(_request: Request, exc: NotFoundError) -> ORJSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(_request: Request, exc: InvalidTransitionError) -> ORJSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(GuardrailCapError)
    async def guardrail_cap_handler(_request: Request, exc: GuardrailCapError) -> ORJSONResponse:
        return _error(422, str(exc))

    @app.exception_handler(ProviderConfigError)
    async def provider_config_handler(_request: Request, exc: ProviderConfigError) -> ORJSONResponse:
        logger.error("Provider is not configured", extra={"error": str(exc)})
        return _error(503, str(exc))

    @app.exception_handler(ProviderError)
    async def provider_error_handler(_request: Request, exc: ProviderError) -> ORJSONResponse:
        logger.error("Provider call failed", extra={"error": str(exc), "status_code": exc.status_code})
        return _error(502, str(exc))

    @app.exception_handler(ProgrammingError)
    async def programming_error_handler(_request: Request, exc: ProgrammingError) -> ORJSONResponse:
        logger.exception("Database programming error", exc_info=exc)
        if _is_schema_mismatch_programming_error(exc):
            return _error(503, "Database schema is out of date. Run `alembic upgrade head` and redeploy.")
        return _error(500, "Database query failed.")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return _error(500, "Internal server error.")

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"db": "ok"}

    app.include_router(ads_operator.router)
    app.include_router(ad_accounts.router)
    app.include_router(outbox.router)
    app.include_router(webhooks.router)
    return app


app = create_app()
