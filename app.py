"""
app.py - FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, runs startup initialization and
owns the background sweep thread.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from smartmatch.controllers.matching_controller import router as matching_router
from smartmatch.controllers.operator_controller import router as operator_router
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.auth_service import AuthService
from smartmatch.services.guardrail_service import GuardrailService
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.services.sweep_scheduler import SweepScheduler
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every dependency is created here and published on app.state; controllers
    resolve them from there.
    """
    settings = settings or get_settings()

    # --- Repository (single SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    matching_service = SmartMatchService(repository=repository, settings=settings)
    guardrail_service = GuardrailService(repository=repository, settings=settings)
    auth_service = AuthService(settings=settings)
    sweep_scheduler = SweepScheduler(matching_service=matching_service, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        try:
            yield
        finally:
            _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(matching_router)
    app.include_router(operator_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.matching_service = matching_service
    app.state.guardrail_service = guardrail_service
    app.state.auth_service = auth_service
    app.state.sweep_scheduler = sweep_scheduler

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. The demo directory is seeded only when the providers table is empty.
      3. Sweeps start last, once the schema is in place.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    sweep_scheduler: SweepScheduler = app.state.sweep_scheduler

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo provider directory (skipped if providers exist)")
        repository.seed_demo_directory()

    if settings.sweep_enabled:
        logger.info("Startup: starting sweep scheduler")
        sweep_scheduler.start()

    logger.info("Startup complete - system ready")


def _shutdown(app: FastAPI) -> None:
    sweep_scheduler: SweepScheduler = app.state.sweep_scheduler
    if sweep_scheduler.running:
        sweep_scheduler.stop()


# Module-level app object for uvicorn
app = create_app()
