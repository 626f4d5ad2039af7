# main.py — Issue Tracker API
# Features:
# - Request IDs + timing logs
# - Security headers
# - JSON error bodies with a "message" key
# - Startup: tables, bootstrap admin, spreadsheet header, telemetry

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthService, SECRET_KEY
from database import init_db, close_db, get_db_session, get_db_context
from issue_store import IssueValidationError
from sheet_mirror import SheetMirror, SheetMirrorConfig, SheetSyncError
from telemetry import setup_telemetry

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("issue-tracker")


def _check_startup_config():
    """Log what is missing from the environment; nothing here is fatal."""
    warnings = []

    if not os.getenv("JWT_SECRET_KEY") or len(SECRET_KEY) < 32:
        warnings.append("JWT_SECRET_KEY is not set or too short; tokens are signed with an ephemeral key")

    if not SheetMirrorConfig.from_env().enabled:
        warnings.append("Google Sheets credentials not configured; spreadsheet sync is disabled")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


async def _seed_admin():
    try:
        async with get_db_context() as db:
            await AuthService.ensure_seed_admin(db)
    except Exception as e:
        logger.error(f"Error creating bootstrap admin: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Issue Tracker v{VERSION}...")
    await init_db()
    _check_startup_config()
    await _seed_admin()

    mirror = SheetMirror(SheetMirrorConfig.from_env())
    app.state.sheet_mirror = mirror
    try:
        await mirror.initialize_sheet()
    except SheetSyncError:
        logger.error("Spreadsheet header check failed; aborting startup")
        await mirror.aclose()
        raise

    setup_telemetry(app)
    yield
    logger.info("Shutting down Issue Tracker...")
    await mirror.aclose()
    await close_db()


app = FastAPI(
    title="Issue Tracker",
    description="Issue and feature-request tracker with Google Sheets mirroring",
    version=VERSION,
    lifespan=lifespan,
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


# ============================================================
# MIDDLEWARE: Request IDs + Timing
# ============================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "loc": [str(part) for part in err.get("loc", [])],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "unknown")),
        }
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": errors})


@app.exception_handler(IssueValidationError)
async def issue_validation_handler(request: Request, exc: IssueValidationError):
    errors = [{"loc": ["body", field], "msg": msg, "type": "invalid"} for field, msg in sorted(exc.errors.items())]
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": errors})


@app.exception_handler(SheetSyncError)
async def sheet_sync_exception_handler(request: Request, exc: SheetSyncError):
    # The store write is already committed; only the mirror is behind
    logger.error(f"Spreadsheet sync failed [rid={_request_id(request)}]: {exc}")
    return JSONResponse(
        status_code=500,
        content={"message": "Internal server error", "requestId": _request_id(request)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "Internal server error", "requestId": _request_id(request)},
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, issues  # noqa: E402

app.include_router(auth.router)
app.include_router(issues.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(request: Request):
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    mirror = getattr(request.app.state, "sheet_mirror", None)
    mirror_enabled = mirror.enabled if mirror is not None else SheetMirrorConfig.from_env().enabled

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "sheetMirror": "enabled" if mirror_enabled else "disabled",
    }


@app.get("/")
async def root():
    return {
        "name": "Issue Tracker",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
