import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from clinic_scheduler.core import config
from clinic_scheduler.database import ensure_scheduling_schema, init_db
from clinic_scheduler.routes import appointment_routes, availability_routes, notification_routes
from clinic_scheduler.services.connection_registry import ConnectionRegistry
from clinic_scheduler.services.locks import KeyedLock

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.validate_runtime_config()
    try:
        init_db()
        ensure_scheduling_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')
    yield


def create_app() -> FastAPI:
    app = FastAPI(title='Clinic Scheduler', lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    # Process-wide live channels and booking/transition locks, owned by this app.
    app.state.connection_registry = ConnectionRegistry()
    app.state.scheduling_locks = KeyedLock()

    @app.get('/')
    def root():
        return {'status': 'Clinic Scheduler API Running'}

    app.include_router(availability_routes.router, prefix='/availability')
    app.include_router(appointment_routes.router, prefix='/appointments')
    app.include_router(notification_routes.router, prefix='/notifications')

    return app


app = create_app()
