import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from constants import CORS_ALLOW_ORIGINS, RELAY_BACKEND
from logging_config import get_logger, setup_logging
from relay import Relay, create_relay
from routers.rooms import rooms_router
from schemas.rooms import HealthResponse

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(relay: Optional[Relay] = None) -> FastAPI:
    """Build the relay application.

    When no relay is given one is built from RELAY_BACKEND at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_relay = getattr(app.state, "relay", None) is None
        if owns_relay:
            app.state.relay = create_relay(RELAY_BACKEND)
            logger.info(f"Relay started with {RELAY_BACKEND} backend")
        try:
            yield
        finally:
            if owns_relay:
                await app.state.relay.close()
                app.state.relay = None
                logger.info("Relay stopped")

    app = FastAPI(title="PairCall signaling relay", lifespan=lifespan)
    app.state.relay = relay

    allow_all = "*" in CORS_ALLOW_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else CORS_ALLOW_ORIGINS,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    logger.debug(f"CORS allowed origins: {CORS_ALLOW_ORIGINS}")

    app.include_router(rooms_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", rooms=await app.state.relay.room_count())

    @app.websocket("/ws")
    async def signaling_endpoint(websocket: WebSocket):
        """Signaling socket. One connection is one participant; closing it leaves its room."""
        relay = websocket.app.state.relay
        await websocket.accept()
        connection_id = await relay.connect(websocket.send_text)

        try:
            message_count = 0
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection_id}")
                await relay.handle_text(connection_id, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            # Leave the room deterministically whatever ended the socket
            await relay.disconnect(connection_id)
            try:
                await websocket.close()
            except Exception as e:
                # Already closed by the client
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
