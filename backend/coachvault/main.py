import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from coachvault.config import settings
from coachvault.database import engine, Base
from coachvault.errors import (
    CoachVaultError,
    CorruptedDataError,
    DangerousOperationBlocked,
    InsufficientPermission,
    NotFoundError,
)
from coachvault.routers import admin, conversations

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: 404,
    InsufficientPermission: 409,
    DangerousOperationBlocked: 403,
    CorruptedDataError: 422,
}

HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "invalid_request",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    alembic_ini = Path(__file__).resolve().parent.parent / "alembic.ini"
    if alembic_ini.exists() and os.environ.get("COACHVAULT_SKIP_MIGRATIONS") != "1":
        # Dispose engine pool to avoid SQLite locking conflicts with alembic
        engine.dispose()
        await asyncio.to_thread(_run_alembic, alembic_ini)
    else:
        Base.metadata.create_all(bind=engine)
    yield


def _run_alembic(alembic_ini: Path):
    if settings.database_url.startswith("sqlite:///") and ":memory:" not in settings.database_url:
        import sqlite3
        # Checkpoint WAL before alembic to avoid lock contention
        conn = sqlite3.connect(settings.database_url.replace("sqlite:///", ""))
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.close()

    from alembic import command
    from alembic.config import Config
    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(alembic_ini.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(alembic_cfg, "head")


app = FastAPI(title="CoachVault Conversation API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"message": message, "code": code}})


@app.exception_handler(CoachVaultError)
async def coachvault_error_handler(request: Request, exc: CoachVaultError):
    status_code = next((s for cls, s in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code == 500:
        logger.exception(f"Unhandled {exc.__class__.__name__} on {request.url.path}", exc_info=exc)
    return _error(status_code, str(exc), exc.code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, str(exc), "bad_request")


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail), HTTP_ERROR_CODES.get(exc.status_code, "error"))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()))
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    return _error(422, message, "invalid_request")


app.include_router(conversations.router)
app.include_router(admin.router)


@app.get("/")
def root():
    return {"app": "coachvault", "version": "0.1.0"}
