"""Tessera - session and credential lifetime service."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tessera.config import get_settings
from tessera.logging_config import setup_logging

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    from tessera.database import Base, SessionLocal, engine
    from tessera.services.cleanup import CleanupService

    # Import all models so they're registered with Base
    from tessera import models  # noqa: F401

    setup_logging(settings.log_level, settings.log_format)
    Base.metadata.create_all(bind=engine)

    cleanup_service = CleanupService(
        SessionLocal,
        interval_seconds=settings.cleanup_interval_seconds,
        retention_days=settings.inactive_retention_days,
    )
    app.state.cleanup_service = cleanup_service
    if settings.cleanup_enabled:
        await cleanup_service.start()

    yield

    await cleanup_service.stop()


app = FastAPI(
    title=settings.app_name,
    description="Multi-device sessions, credential renewal and revocation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from tessera.api import auth  # noqa: E402

app.include_router(auth.router)
