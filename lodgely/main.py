# Application entrypoint: configures middleware, error mapping, startup routines, and API routers.
import asyncio
import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Base, engine
from .errors import (
    AuthorizationError,
    BusyError,
    ConflictError,
    LodgelyError,
    NotFoundError,
    PartialFailure,
    StateError,
    ValidationError,
)
from .routes.bookings import router as bookings_router
from .routes.changes_ws import router as changes_ws_router
from .routes.conversations import router as conversations_router
from .routes.properties import router as properties_router
from .services import build_services

logger = logging.getLogger("lodgely.api")


# Parse CORS origins from a comma-separated env var.
# Note: '*' cannot be used with allow_credentials=True; we fall back to explicit localhost origins for dev.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="Lodgely API", version="0.1.0")
app.state.services = build_services()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ORIGINS")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------
# Error mapping
# ----------------
_STATUS_FOR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    StateError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(LodgelyError)
async def lodgely_error_handler(request: Request, exc: LodgelyError) -> JSONResponse:
    if isinstance(exc, PartialFailure):
        # The request was accepted; only the calendar side effect is outstanding
        request_data = exc.request.model_dump(mode="json") if exc.request is not None else None
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "error": exc.code,
                "detail": exc.detail,
                "request": request_data,
                "recovery": "reconcile",
            },
        )
    if isinstance(exc, BusyError):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": {"error": exc.code, "retry_after": exc.retry_after}},
            headers={"Retry-After": str(exc.retry_after)},
        )

    code = next((s for cls, s in _STATUS_FOR.items() if isinstance(exc, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code >= 500:
        logger.error("api.unmapped_error", extra={"path": request.url.path, "error": repr(exc)})
    return JSONResponse(status_code=code, content={"error": exc.code, "detail": exc.detail})


@app.on_event("startup")
def on_startup() -> None:
    # For local SQLite, auto-create tables; production DBs rely on Alembic migrations.
    if os.getenv("DATABASE_URL", "sqlite:///./data.db").startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    # Mirror change events from other processes into the local feed (no-op when Redis is disabled)
    loop = asyncio.get_event_loop()
    app.state.services.feed.start_redis_bridge(loop)


@app.on_event("shutdown")
def on_shutdown() -> None:
    app.state.services.feed.close()


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(properties_router, prefix="/api/v1", tags=["properties"])
app.include_router(bookings_router, prefix="/api/v1", tags=["booking-requests"])
app.include_router(conversations_router, prefix="/api/v1", tags=["conversations"])
app.include_router(changes_ws_router, prefix="/ws", tags=["changes"])
