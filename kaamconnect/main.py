# Application entrypoint: middleware, error rendering, startup routines and API routers.
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import IS_SQLITE, Base, engine
from .errors import KaamConnectError
from .realtime import start_redis_subscriber
from .routes.auth import router as auth_router
from .routes.bookings import router as bookings_router
from .routes.changes_ws import router as changes_ws_router
from .routes.equipment import router as equipment_router
from .routes.messages import router as messages_router
from .routes.notifications import router as notifications_router

logger = logging.getLogger("kaamconnect")


# Parse CORS origins from a comma-separated env var.
# '*' cannot be combined with allow_credentials=True, so it maps to the local dev origins.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:19006",
    ]

    if not env_value:
        return default_dev_origins

    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins

    return origins


app = FastAPI(title="Gramin KaamConnect API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ORIGINS")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KaamConnectError)
async def domain_error_handler(request: Request, exc: KaamConnectError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"path": request.url.path, "code": exc.code, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.on_event("startup")
def on_startup() -> None:
    # For local SQLite, auto-create tables; other databases rely on Alembic migrations.
    if IS_SQLITE:
        Base.metadata.create_all(bind=engine)
    # Cross-process fan-out of change events; a no-op unless REDIS_ENABLED
    start_redis_subscriber()


# Liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(auth_router, prefix="", tags=["auth"])
app.include_router(equipment_router, prefix="/api/v1", tags=["equipment"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
app.include_router(messages_router, prefix="/api/v1", tags=["messages"])
app.include_router(notifications_router, prefix="/api/v1", tags=["notifications"])
app.include_router(changes_ws_router, prefix="/ws", tags=["realtime"])
