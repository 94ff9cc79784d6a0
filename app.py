from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routers.events import events_router
from routers.rooms import rooms_router
from backend import Store, create_store
from constants import ROOM_CLEANUP_DELAY
from services.connections import ConnectionManager
from services.messages import MessageHistory
from services.rate_limit import RateLimiter
from services.room_directory import RoomDirectory
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(store_factory: Callable[[], Store] = create_store, grace_period: float = ROOM_CLEANUP_DELAY) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = store_factory()
        history = MessageHistory(store)
        connections = ConnectionManager()
        directory = RoomDirectory(
            store,
            grace_period=grace_period,
            on_teardown=history.clear_room,
            event_sink=connections.deliver,
        )
        connections.bind(lambda room_id: directory.records.member_ids(room_id))

        app.state.store = store
        app.state.history = history
        app.state.connections = connections
        app.state.directory = directory
        app.state.limiter = RateLimiter()
        logger.info(f"Room coordinator started with {store.name} store")
        try:
            yield
        finally:
            await directory.shutdown()
            await connections.close_all()
            logger.info("Room coordinator stopped")

    app = FastAPI(title="FlashChat", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    app.include_router(rooms_router)
    app.include_router(events_router)

    @app.get("/")
    async def root():
        return {"service": "flashchat", "websocket": "/ws"}

    @app.get("/health")
    async def health():
        store = app.state.store
        return {"status": "ok", "store": store.name, "degraded": getattr(store, "degraded", False)}

    logger.info("FastAPI application initialized")
    return app


app = create_app()
