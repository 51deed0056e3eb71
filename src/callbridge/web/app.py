"""FastAPI application for the call-control signaling server."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState

from callbridge.config import ConfigManager
from callbridge.config.config_manager import VERSION
from callbridge.signaling.manager import ConnectionManager
from callbridge.signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)


def create_app(
    config_manager: ConfigManager,
    relay: Optional[SignalingRelay] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config_manager: ConfigManager instance
        relay: Signaling relay (a fresh one if omitted)

    Returns:
        Configured FastAPI application
    """
    if relay is None:
        relay = SignalingRelay(ConnectionManager())

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        yield
        await application.state.relay.shutdown()

    app = FastAPI(
        title="Callbridge Signaling Server",
        description="Signaling relay and client configuration for browser call control",
        version=VERSION,
        lifespan=lifespan,
    )

    # Store references for API handlers
    app.state.config_manager = config_manager
    app.state.relay = relay

    @app.get("/api/health")
    async def get_health() -> Dict[str, Any]:
        """Liveness check with current counters."""
        result: Dict[str, Any] = {
            "status": "healthy",
            "environment": app.state.config_manager.get("server.environment", "development"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        result.update(app.state.relay.health())
        return result

    @app.get("/api/config")
    async def get_client_config() -> Dict[str, Any]:
        """Configuration the browser client needs to place calls."""
        result: Dict[str, Any] = app.state.config_manager.client_config()
        return result

    @app.get("/api/stats")
    async def get_stats() -> Dict[str, Any]:
        """Detailed relay statistics including room membership."""
        result: Dict[str, Any] = app.state.relay.detailed_stats()
        return result

    @app.websocket("/ws")
    async def signaling_socket(websocket: WebSocket) -> None:
        """One signaling connection per agent browser tab."""
        origin = websocket.headers.get("origin")
        if not app.state.config_manager.is_origin_allowed(origin):
            logger.warning("Rejected WebSocket from disallowed origin: %s", origin)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        relay_: SignalingRelay = app.state.relay
        connection_id = await relay_.connections.connect(websocket)
        await relay_.on_connect(connection_id)
        try:
            while websocket.application_state == WebSocketState.CONNECTED:
                text = await websocket.receive_text()
                await relay_.handle_text(connection_id, text)
        except WebSocketDisconnect:
            logger.debug("WebSocket %s closed by client", connection_id)
        finally:
            await relay_.connections.disconnect(connection_id)
            await relay_.on_disconnect(connection_id)

    logger.info("FastAPI application created")
    return app
