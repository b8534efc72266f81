from typing import Optional
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from qb_manager.cache import CacheStore
from qb_manager.client_factory import ClientRegistry
from qb_manager.config import Config
from qb_manager.logger import logger
from qb_manager.models import init_db
from qb_manager.notifier import ChangeNotifier
from qb_manager.sync import SyncEngine

from .routes import instances, torrents, live


def create_app(
    store: Optional[CacheStore] = None,
    clients: Optional[ClientRegistry] = None,
    notifier: Optional[ChangeNotifier] = None,
    engine: Optional[SyncEngine] = None,
) -> FastAPI:
    """
    Build the API application and its long-lived services.

    The services are stored on app.state and handed to routes through the
    dependencies module. The sync loop and the heartbeat only start with the
    application's startup event.
    """
    app = FastAPI(
        title="qBittorrent Manager API",
        description="Cached dashboard API over multiple qBittorrent instances",
        version="1.0.0"
    )

    app.state.store = store if store is not None else CacheStore()
    app.state.clients = clients if clients is not None else ClientRegistry()
    app.state.notifier = notifier if notifier is not None else ChangeNotifier()
    if engine is None:
        engine = SyncEngine(app.state.store, app.state.clients, app.state.notifier)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials="*" not in Config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Missing or malformed fields are client errors
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    app.include_router(instances.router)
    app.include_router(torrents.router)
    app.include_router(live.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting qBittorrent Manager API")
        init_db()
        app.state.engine.start()
        app.state.notifier.start_heartbeat()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Stopping qBittorrent Manager API")
        await app.state.engine.stop()
        await app.state.notifier.stop()
        app.state.engine.shutdown()
        app.state.clients.clear()

    return app


app = create_app()
