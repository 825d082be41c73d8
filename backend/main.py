"""
Dropbridge: FastAPI application entry point.

Serves the control channel on ``/ws`` (peer directory, signaling relay
and relayed transfers) and the REST API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from api.gateway import EventGateway
from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, LOG_LEVEL, STATIC_DIR
from directory.service import PeerDirectory
from signaling.relay import SignalingRelay
from transfer.registry import RelaySessionRegistry

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Wire the services into a new application instance."""
    directory = PeerDirectory()
    connections = ConnectionManager()
    registry = RelaySessionRegistry()
    relay = SignalingRelay(directory, connections.send_event)
    gateway = EventGateway(directory, connections, registry, relay)

    # Every directory mutation redelivers each peer's filtered view
    directory.on_change(connections.push_views)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting Dropbridge services...")
        gateway.start_sweeper()
        logger.info(f"Dropbridge ready on {API_HOST}:{API_PORT}")
        try:
            yield
        finally:
            logger.info("Shutting down Dropbridge services...")
            await gateway.stop_sweeper()

    app = FastAPI(title="Dropbridge", version="1.0.0", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.directory = directory
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    init_routes(gateway)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection_id = await gateway.open(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("bytes")
                if frame is None:
                    frame = message.get("text")
                if frame is None:
                    continue
                await gateway.handle_frame(connection_id, frame)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Connection {connection_id} failed: {e}", exc_info=True)
        finally:
            await gateway.teardown(connection_id)

    # --- Static Files (Frontend) ---
    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

        @app.get("/")
        async def read_index():
            return FileResponse(STATIC_DIR / "index.html")
    else:
        logger.warning(f"Frontend not found at {STATIC_DIR}. API only mode.")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )
