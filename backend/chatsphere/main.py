"""Chatsphere Backend Application.

This is the main entry point for the Chatsphere relay service: a real-time,
room-scoped message relay with persisted history, live presence and
point-to-point call signaling.

Modules:
    - relay: sessions, rooms, message relay, signaling, WebSocket router
    - storage: DuckDB-backed message store
    - auth: JWT identity verification
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsphere.config import get_config
from chatsphere.relay.hub import ChatHub
from chatsphere.relay.router import router as relay_router
from chatsphere.storage import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
    "httpx",
    "httpcore",
    "multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatsphere.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    ChatHub.get_instance(config)
    logger.info(
        f"Relay ready on ws://{config.server.host}:{config.server.port}/ws "
        f"(history_limit={config.relay.history_limit})"
    )

    yield  # Application runs here

    # Shutdown
    MessageStore.reset_instance()
    ChatHub.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatsphere API",
    description="Real-time room relay with persisted history and call signaling",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(relay_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of online connections and live rooms.
    """
    hub = ChatHub.get_instance()
    return {
        "status": "ok",
        "online": len(hub.registry),
        "rooms": hub.rooms.room_count(),
    }


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run(
        "chatsphere.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )
