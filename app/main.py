"""FastAPI application entry point."""

import logging
import os
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.routes import analyses, models, sift
from app.services.errors import SiftError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="SIFT Stream",
    description="Streaming SIFT fact-checking analyses with stop, restart and follow-up chat",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-Id"],
)

# Include routers
app.include_router(sift.router)
app.include_router(analyses.router)
app.include_router(models.router)


@app.exception_handler(SiftError)
async def sift_error_handler(request: Request, exc: SiftError):
    """Map engine errors to JSON error bodies."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.type_name}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"type": exc.type_name, "message": exc.message}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": {"type": "InternalServerError", "message": "An unexpected error occurred"}},
    )


@app.on_event("startup")
async def startup_event():
    """Make sure the schema exists before serving requests."""
    logger.info("Starting application...")

    from app.database import SessionLocal
    import sqlalchemy

    try:
        db = SessionLocal()
        # Check if the analyses table exists
        table_exists = sqlalchemy.inspect(db.get_bind()).has_table("analyses")
        db.close()

        if table_exists:
            logger.info("Database tables already exist, skipping migrations")
        else:
            # Run database migrations
            logger.info("Running database migrations...")
            from alembic import command
            from alembic.config import Config

            alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
            command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - analyses will not be saved until the database is reachable")


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {"message": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "SIFT Stream",
        "version": "0.1.0",
        "status": "running",
    }
