"""FastAPI application for CareSlot."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careslot import __version__
from careslot.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from careslot.api.routes import appointments, health, reschedule, slots
from careslot.config import Settings, get_settings
from careslot.core.database import Database
from careslot.scheduling.errors import SchedulingError
from careslot.scheduling.service import SchedulingService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "not_found": 404,
    "slot_not_found": 404,
    "slot_unavailable": 409,
    "invalid_transition": 409,
    "reschedule_failed": 409,
    "duplicate_pending_request": 409,
    "conflict": 409,
    "validation_error": 422,
    "consistency_violation": 500,
}


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A ``database`` passed in is used as-is and left open on shutdown;
    otherwise one is built from settings and disposed with the app.
    """
    settings = settings or get_settings()
    owns_database = database is None
    database = database or Database.from_settings(settings)
    service = SchedulingService(database, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CareSlot API")
        if owns_database and database.is_sqlite:
            await database.create_all()
        yield
        logger.info("Shutting down CareSlot API")
        await service.wait_idle()
        if owns_database:
            await database.dispose()

    app = FastAPI(
        title="CareSlot API",
        description="Appointment scheduling and slot reconciliation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    app.include_router(health.router, tags=["health"])
    app.include_router(slots.router, prefix="/api/v1", tags=["slots"])
    app.include_router(appointments.router, prefix="/api/v1", tags=["appointments"])
    app.include_router(reschedule.router, prefix="/api/v1", tags=["reschedule"])

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        status_code = STATUS_CODES.get(exc.code, 400)
        if status_code >= 500:
            logger.error(f"Consistency violation on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": str(exc) if settings.debug_mode else "Internal server error",
                "details": {},
            },
        )

    return app
