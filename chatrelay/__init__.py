# chatrelay/__init__.py

from fastapi import FastAPI
from chatrelay.core.config import Settings, configure_logging, get_settings
from chatrelay.core.database import init_db
from chatrelay.container import Container
from chatrelay.routes.admin import router as admin_router
from chatrelay.routes.cron import router as cron_router
from chatrelay.routes.gateway import router as gateway_router
from chatrelay.routes.webhook import router as webhook_router
from chatrelay.routes.worker import router as worker_router


def create_app(settings: Settings = None, container: Container = None):
    # Initialize FastAPI app
    app = FastAPI(title="Chat Relay")

    settings = settings or (container.settings if container else get_settings())

    # Configure logging
    configure_logging(settings.LOG_LEVEL)

    # Build the shared breakers, caches and queue, then the tables
    container = container or Container(settings)
    init_db(container.engine)
    app.state.container = container

    # Register routes
    app.include_router(webhook_router)
    app.include_router(gateway_router)
    app.include_router(worker_router)
    app.include_router(cron_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/")
    def read_root():
        return {"message": "Hello, Chat Relay"}

    return app
