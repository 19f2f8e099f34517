import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.api import datasource
from backend.app.core.config import VERSION, Settings, settings
from backend.app.core.logging_setup import setup_logging
from backend.app.datasource.registry import Registry
from backend.app.services.datasource_service import DataSourceService
from backend.app.services.metadata_store import create_metadata_store

logger = logging.getLogger(__name__)


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(app_settings.LOG_LEVEL, app_settings.LOG_FORMAT, app_settings.LOG_OUTPUT)
        store = create_metadata_store(
            app_settings.METADATA_STORE_TYPE,
            app_settings.METADATA_STORE_URL,
            app_settings.MIGRATE_ON_START,
        )
        service = DataSourceService(store, Registry(), connect_timeout=app_settings.DATASOURCE_CONNECT_TIMEOUT)
        service.initialize_plugins()

        app.state.metadata_store = store
        app.state.datasource_service = service
        logger.info(f"{app_settings.PROJECT_NAME} {VERSION} started")
        yield
        store.close()
        logger.info(f"{app_settings.PROJECT_NAME} stopped")

    app = FastAPI(lifespan=lifespan, title=f"{app_settings.PROJECT_NAME} API", version=VERSION)

    if app_settings.ENABLE_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=app_settings.ALLOWED_METHODS,
            allow_headers=app_settings.ALLOWED_HEADERS,
        )

    app.include_router(datasource.router, prefix=app_settings.API_V1_STR)
    app.include_router(datasource.system_router, prefix=app_settings.API_V1_STR)

    @app.get("/")
    def read_root():
        return {"message": f"Welcome to {app_settings.PROJECT_NAME} API"}

    return app


app = create_app()
