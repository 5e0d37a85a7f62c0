"""
FastAPI application serving the weathermap.

Endpoints
---------
- GET /health            -> Simple liveness check
- GET /api/topology      -> Current topology definition
- GET /api/metrics       -> Latest metrics snapshot (204 before the first one)
- GET /background.png    -> Map background image
- GET /api/snapshot.png  -> Most recently exported PNG of the map
- WS  /ws                -> Push channel: topology on connect, then every
                            topology/metrics message the poll loop publishes

On startup the lifespan handler loads the topology, starts the poll loop, the
config watcher and (if enabled) the periodic PNG export.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse

from weathermap.backends import SnapshotExporter
from weathermap.config import settings
from weathermap.poller import Message, PeriodicExporter, PollLoop
from weathermap.snmp_client import get_probe
from weathermap.topology import ConfigWatcher, RuntimeConfig, load_runtime_config

log = logging.getLogger("weathermap.api")


class AppState:
    """Everything the routes need; filled in by the lifespan handler."""

    def __init__(self) -> None:
        self.poll_loop: Optional[PollLoop] = None
        self.exporter: Optional[SnapshotExporter] = None
        self.sockets: Set[WebSocket] = set()

    async def broadcast(self, message: Message) -> None:
        payload = message.to_message()
        for socket in list(self.sockets):
            try:
                await socket.send_json(payload)
            except WebSocketDisconnect:
                self.sockets.discard(socket)
            except Exception as exc:
                # A dead peer can fail with any transport error; only this socket goes.
                log.warning("[%s] Dropping websocket after failed send: %r", socket.client, exc)
                self.sockets.discard(socket)


state = AppState()


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = load_runtime_config(settings.resolved_config_path, settings.data_dir.resolve())
    probe = get_probe(settings)
    poll_loop = PollLoop(runtime, probe, target_timeout=settings.target_timeout_seconds)
    poll_loop.subscribe(state.broadcast)

    exporter = SnapshotExporter(settings.resolved_snapshot_dir, runtime.background_path)
    if settings.snapshot_interval_seconds > 0:
        poll_loop.subscribe(PeriodicExporter(exporter, poll_loop, settings.snapshot_interval_seconds))

    async def on_config_change(new_runtime: RuntimeConfig) -> None:
        poll_loop.replace_topology(new_runtime)

    watcher = ConfigWatcher(
        settings.resolved_config_path,
        on_config_change,
        interval=settings.config_watch_interval_seconds,
        data_dir=settings.data_dir.resolve(),
    )

    state.poll_loop = poll_loop
    state.exporter = exporter

    stop = asyncio.Event()
    tasks = [
        asyncio.create_task(poll_loop.run_forever(stop)),
        asyncio.create_task(watcher.run(stop)),
    ]
    try:
        yield
    finally:
        stop.set()
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await probe.close()
        state.poll_loop = None


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Network Weathermap API",
    version="0.1.0",
    lifespan=lifespan,
)


def _poll_loop() -> PollLoop:
    if state.poll_loop is None:
        raise HTTPException(status_code=503, detail="Topology not loaded yet")
    return state.poll_loop


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> dict:
    """Simple liveness endpoint used for health checks."""
    return {"status": "ok"}


@app.get("/api/topology")
def get_topology() -> dict:
    return _poll_loop().topology_message.to_message()


@app.get("/api/metrics")
def get_metrics():
    """
    Latest snapshot. 204 (no body) until the first poll cycle has finished,
    so clients can show a "no data yet" state.
    """
    latest = state.poll_loop.latest if state.poll_loop else None
    if latest is None:
        return Response(status_code=204)
    return latest.to_message()


@app.get("/background.png")
def get_background():
    background = _poll_loop().runtime.background_path
    if not background.exists():
        raise HTTPException(status_code=404, detail="Background not found")
    return FileResponse(background)


@app.get("/api/snapshot.png")
def get_snapshot_image():
    image = state.exporter.latest_image if state.exporter else None
    if image is None or not image.exists():
        raise HTTPException(status_code=404, detail="No snapshot exported yet")
    return FileResponse(image, media_type="image/png")


@app.websocket("/ws")
async def websocket_updates(websocket: WebSocket) -> None:
    """
    Send the topology (and the latest metrics, if any) on connect; after that
    the socket receives every message the poll loop publishes.
    """
    await websocket.accept()
    poll_loop = state.poll_loop
    if poll_loop is None:
        await websocket.close(code=1013)
        return

    await websocket.send_json(poll_loop.topology_message.to_message())
    if poll_loop.latest is not None:
        await websocket.send_json(poll_loop.latest.to_message())

    state.sockets.add(websocket)
    try:
        while True:
            # Client messages are ignored; this only notices disconnects.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        state.sockets.discard(websocket)
