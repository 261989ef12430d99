"""
Broker Server

Design Decision: Server Framework
=================================

Options Considered:
1. FastAPI - async, websocket support, auto-docs
2. websockets.serve - minimal, but no HTTP endpoints for health checks
3. aiohttp - async, less batteries included

Decision: FastAPI
- Same async model as the rest of the project
- Websocket endpoint and plain HTTP status endpoints side by side
- Served by uvicorn

Endpoints:
- GET /        - basic info
- GET /health  - liveness
- GET /stats   - broker statistics
- WS  /ws      - control-plane connection
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .broker import SignalingBroker
from .. import __version__
from ..config import Config

logger = logging.getLogger(__name__)


# === Response Models ===

class ServerInfo(BaseModel):
    name: str
    version: str
    status: str


class HealthStatus(BaseModel):
    ok: bool


class BrokerStats(BaseModel):
    rooms: int
    paired_rooms: int
    members: int
    connections: int
    messages_received: int
    messages_relayed: int
    messages_dropped: int


def create_app(broker: Optional[SignalingBroker] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        broker: SignalingBroker to serve (a fresh one if not provided)

    Returns:
        FastAPI application
    """
    broker = broker if broker is not None else SignalingBroker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Signaling broker starting...")
        yield
        broker.close()
        logger.info("Signaling broker stopped")

    app = FastAPI(
        title="fusionshare signaling broker",
        description="Pairs two endpoints in a room and relays their WebRTC handshake",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.broker = broker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_model=ServerInfo, tags=["General"])
    async def root():
        """API root - basic info."""
        return ServerInfo(
            name="fusionshare signaling broker",
            version=__version__,
            status="running",
        )

    @app.get("/health", response_model=HealthStatus, tags=["General"])
    async def health():
        return HealthStatus(ok=True)

    @app.get("/stats", response_model=BrokerStats, tags=["Broker"])
    async def stats():
        """Get broker statistics."""
        return BrokerStats(**broker.get_stats())

    @app.websocket("/ws")
    async def control_socket(websocket: WebSocket):
        """One control-plane connection per endpoint."""
        await websocket.accept()
        broker.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.debug("WebSocket closed by client")
                    break
                text = message.get("text")
                if text is None:
                    # Control messages are JSON text frames only
                    broker.drop_frame("binary frame")
                    continue
                await broker.handle_text(websocket, text)
        except WebSocketDisconnect:
            logger.debug("WebSocket closed by client")
        finally:
            await broker.disconnect(websocket)

    return app


async def run_broker_server(config: Config, broker: Optional[SignalingBroker] = None):
    """
    Run the broker server until cancelled.

    Args:
        config: host, port and log level are read from here
        broker: broker instance to serve
    """
    import uvicorn

    app = create_app(broker)

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    await server.serve()
