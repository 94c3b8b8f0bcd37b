"""
RepoRadar API

Main FastAPI application: wiring for routers, rate limiting, error handling
and the background services that live for the whole process.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

import config
from database import SessionLocal, check_db, init_db
from errors import AppError, register_error_handlers
from limiter import limiter
from logging_config import setup_logging
from routers import (
    admin, auth, batch, billing, code_review, developer, docs, export, insights, library, public_api, repositories,
    teams,
)
from services.analysis import record_event
from services.batch import BatchQueue
from services.docs import DocsLibrary

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    app.state.docs = DocsLibrary(config.DOCS_DIR, config.DOCS_CACHE_TTL)
    app.state.batch_queue = BatchQueue(SessionLocal)
    app.state.batch_queue.start()
    app.state.batch_queue.resume()
    logger.info(f"RepoRadar API {config.APP_VERSION} started ({config.ENVIRONMENT})")
    yield
    app.state.batch_queue.shutdown()


app = FastAPI(
    title="RepoRadar API",
    description="GitHub repository discovery and AI-powered analysis",
    version=config.APP_VERSION,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests. Please try again later."},
    )


def record_server_error(request: Request, exc: AppError):
    """Store 5xx responses as `error` events; the admin error rate reads them."""
    session = SessionLocal()
    try:
        record_event(session, exc.code, "error",
                     properties={"path": request.url.path, "method": request.method})
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"Could not record error event: {e}")
    finally:
        session.close()


register_error_handlers(app, on_server_error=record_server_error)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Admin-Token"],
    expose_headers=[
        "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset",
        "X-Analysis-Limit", "X-Analysis-Remaining", "X-Analysis-Reset",
        "Content-Disposition",
    ],
)

for module in (
    auth, repositories, batch, export, library, insights, teams,
    developer, public_api, billing, code_review, docs, admin,
):
    app.include_router(module.router)


# =============================================================================
# LIVENESS
# =============================================================================

@app.get("/")
def root():
    return {"status": "ok", "message": "RepoRadar API", "version": config.APP_VERSION}


@app.get("/health")
def health(request: Request):
    try:
        database = "connected" if check_db() else "error"
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        database = "error"

    queue = getattr(request.app.state, "batch_queue", None)
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "ai_enabled": config.gemini_enabled(),
        "billing_enabled": config.stripe_enabled(),
        "batch_queue": {
            "running": bool(queue and queue.running),
            "workers": queue.max_workers if queue else 0,
        },
        "version": config.APP_VERSION,
    }
