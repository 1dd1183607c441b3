"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from pastprep import __version__
from pastprep.config import settings
from pastprep.api import (
    exams_router,
    health_router,
    practice_router,
    users_router,
)
from pastprep.db.session import init_db
from pastprep.schemas.common import ErrorResponse
from pastprep.services.errors import InvalidRecordError, PersistenceError
from pastprep.services.session_manager import shutdown_session_manager

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 PastPrep backend starting…")
    init_db()
    yield
    shutdown_session_manager()
    logger.info("✅ PastPrep backend shut down")


app = FastAPI(
    title="PastPrep API",
    description="Timed past-paper exams and topic practice with automated grading",
    version=__version__,
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# ── Error envelopes ───────────────────────────────────────────────────────────


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    body = ErrorResponse(
        error_code=exc.code,
        message="Your answers could not be saved. Please try submitting again.",
    )
    return JSONResponse(status_code=503, content=body.model_dump())


@app.exception_handler(InvalidRecordError)
async def invalid_record_handler(request: Request, exc: InvalidRecordError):
    body = ErrorResponse(
        error_code=exc.code,
        message="This paper contains invalid data and cannot be used right now.",
        details={"reason": str(exc)},
    )
    return JSONResponse(status_code=500, content=body.model_dump())


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(users_router, prefix="/api/users", tags=["Users"])
app.include_router(exams_router, prefix="/api/exams", tags=["Exams"])
app.include_router(practice_router, prefix="/api/practice", tags=["Practice"])


@app.get("/")
async def root():
    return {
        "name": "PastPrep API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
