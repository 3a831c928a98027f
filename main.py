import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from api.attendance_routes import router as attendance_router
from api.presence_routes import router as presence_router
from api.presence_socket import router as presence_socket_router
from core.config import Settings
from core.errors import Forbidden, InvalidCoordinates, StoreUnavailable
from db.session import create_db_engine, init_db
from services.attendance_ledger import AttendanceLedger
from services.geofence_service import GeofenceEvaluator
from services.presence_broadcaster import PresenceBroadcaster
from services.presence_registry import PresenceRegistry
from utils.request_logging import create_logging_middleware

# This file is the control center of the whole application

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Configure logging
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    # When We Start, build the engine's components once and hang them on app.state
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_engine = engine or create_db_engine(settings.database_url, settings.store_timeout_seconds)
        init_db(db_engine)

        evaluator = GeofenceEvaluator(settings.geofence)
        registry = PresenceRegistry()
        broadcaster = PresenceBroadcaster(registry, evaluator)
        ledger = AttendanceLedger(
            db_engine,
            evaluator,
            timezone_name=settings.timezone,
            store_timeout_seconds=settings.store_timeout_seconds,
        )
        # Every accepted transition is pushed to sockets
        ledger.subscribe(broadcaster.on_attendance_transition)

        app.state.settings = settings
        app.state.engine = db_engine
        app.state.evaluator = evaluator
        app.state.registry = registry
        app.state.broadcaster = broadcaster
        app.state.ledger = ledger

        logger.info(
            "Geofence at (%s, %s) radius=%sm buffer=%sm tz=%s",
            settings.geofence.center_lat,
            settings.geofence.center_lng,
            settings.geofence.radius_meters,
            settings.geofence.buffer_meters,
            settings.timezone,
        )
        yield

        if engine is None:
            db_engine.dispose()

    # Starts Fast API Up; Init
    app = FastAPI(title="Geofenced Attendance", lifespan=lifespan)

    # Allow requests from the web dashboard (dev & production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    create_logging_middleware(app)

    @app.exception_handler(InvalidCoordinates)
    async def invalid_coordinates_handler(request: Request, exc: InvalidCoordinates):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"status": "rejected", "code": "invalid_coordinates", "message": str(exc)},
        )

    @app.exception_handler(Forbidden)
    async def forbidden_handler(request: Request, exc: Forbidden):
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"status": "error", "message": str(exc) or "Forbidden"},
        )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "error",
                "message": "Attendance service temporarily unavailable, please retry.",
                "retryable": True,
            },
            headers={"Retry-After": "2"},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": "Internal Server Error"},
        )

    # Connects Routes to main app
    app.include_router(attendance_router, prefix="/attendance", tags=["Attendance"])
    app.include_router(presence_router, prefix="/presence", tags=["Presence"])
    app.include_router(presence_socket_router, prefix="/presence", tags=["Presence"])

    @app.get("/health", tags=["Health"])
    async def health(request: Request):
        return {"status": "ok", "online": await request.app.state.registry.count()}

    return app


app = create_app()
