"""
server.py — Voice Builder · FastAPI Control Plane
==================================================
One process, one active voice conversation.  The browser streams mic audio
over ``/ws``; the relay bridges it to the upstream voice agent, watches the
conversation for a finished spec, and hands approved specs to the generation
session manager.

Endpoints
---------
  WS   /ws                       Conversation (binary audio + JSON events)
  WS   /ws/logs                  Real-time server log stream
  GET  /health                   Service liveness
  GET  /sessions                 List generation sessions
  GET  /sessions/{id}            One generation session
  POST /sessions/{id}/cancel     Cancel a running generation
  GET  /config                   Active runtime config
  PUT  /config                   Merge a partial config patch (next connection)
  GET  /preview/...              Generated projects (static, read-only)

Process-wide state
------------------
``app.state`` owns the session store, the session manager, the relay hub and
the staleness sweeper task.  Nothing else is global except logging.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError

from agent import AgentConnection
from codegen import GroqCodegenBackend
from config import EngineConfig
from relay import ClientChannel, ConversationRelay, RelayHub
from sessions import GenerationSessionManager, SessionStore

load_dotenv()

# ---------------------------------------------------------------------------
# /ws/logs fan-out (defined before the logging handler that feeds it)
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Pushes formatted log lines to /ws/logs clients.

    The last ``backlog`` lines are kept so a client that attaches mid-run
    sees recent history first.
    """

    def __init__(self, backlog: int = 200) -> None:
        self._clients: Set[WebSocket] = set()
        self._backlog: deque[str] = deque(maxlen=backlog)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def attach(self, ws: WebSocket) -> None:
        await ws.accept()
        for line in list(self._backlog):
            await ws.send_text(line)
        self._clients.add(ws)

    def detach(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def publish(self, line: str) -> None:
        self._backlog.append(line)
        for ws in list(self._clients):
            try:
                await ws.send_text(line)
            except (WebSocketDisconnect, RuntimeError):
                self._clients.discard(ws)


broadcaster = LogBroadcaster()


class _LogStreamHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # logged outside the server loop (import time, worker threads)
        line = json.dumps({
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        })
        loop.create_task(broadcaster.publish(line))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=_LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_builder.server")

_ws_handler = _LogStreamHandler()
_ws_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
logging.root.addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = Path(os.getenv("ENGINE_CONFIG_PATH", "voice_builder_config.json"))
STATIC_DIR  = os.getenv("STATIC_DIR")


class StartupError(RuntimeError):
    """Unrecoverable misconfiguration detected at start-up."""


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise StartupError(f"{name} must be set (environment or .env)")
    return value


def _load_config() -> EngineConfig:
    return EngineConfig.load(CONFIG_PATH)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.deepgram_api_key = _require_env("DEEPGRAM_API_KEY")
    app.state.think_api_key = os.getenv("THINK_API_KEY")

    config: EngineConfig = app.state.config
    Path(config.codegen.output_dir).mkdir(parents=True, exist_ok=True)
    app.state.store = SessionStore()
    app.state.manager = GenerationSessionManager(
        app.state.store,
        GroqCodegenBackend(config.codegen),
        output_dir=config.codegen.output_dir,
        required_fields=config.extraction.required_fields,
        timeout_sec=config.codegen.timeout_sec,
    )
    app.state.hub = RelayHub()
    app.state.sweeper = asyncio.create_task(
        app.state.manager.run_sweeper(
            config.sessions.sweep_interval_sec,
            config.sessions.stale_after_sec,
        ),
        name="session_sweeper",
    )
    log.info(
        "event=server_start output_dir=%s stale_after_sec=%.0f",
        config.codegen.output_dir, config.sessions.stale_after_sec,
    )
    yield

    log.info("event=server_shutdown active_sessions=%d", len(app.state.store))
    app.state.sweeper.cancel()
    await asyncio.gather(app.state.sweeper, return_exceptions=True)
    active = app.state.hub.active
    if active is not None:
        await active.close()
    await app.state.manager.shutdown()
    log.info("event=server_stopped")


app = FastAPI(
    title="Voice Builder",
    version="1.0.0",
    description="Voice ideation to generated web project",
    lifespan=_lifespan,
)
app.state.config = _load_config()

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    "/preview",
    StaticFiles(directory=app.state.config.codegen.output_dir, html=True, check_dir=False),
    name="preview",
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    session_id:       str
    status:           str
    created_at:       str
    age_sec:          float
    artifact_path:    Optional[str] = None
    preview_endpoint: Optional[str] = None
    error:            Optional[str] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Liveness probe."""
    store: SessionStore = request.app.state.store
    hub: RelayHub = request.app.state.hub
    counts: dict[str, int] = {}
    for session in store.values():
        counts[session.status.value] = counts.get(session.status.value, 0) + 1
    return JSONResponse({
        "status":          "ok",
        "client_attached": hub.active is not None,
        "sessions":        len(store),
        "by_status":       counts,
    })


@app.get("/sessions", response_model=list[SessionInfo])
async def list_sessions(request: Request) -> list[SessionInfo]:
    """Snapshot of every tracked generation session."""
    now = time.monotonic()
    manager: GenerationSessionManager = request.app.state.manager
    return [SessionInfo(**s.to_dict(now)) for s in manager.active()]


@app.get("/sessions/{session_id}", response_model=SessionInfo)
async def get_session(session_id: str, request: Request) -> SessionInfo:
    session = request.app.state.manager.status(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session '{session_id}'.")
    return SessionInfo(**session.to_dict(time.monotonic()))


@app.post("/sessions/{session_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_session(session_id: str, request: Request) -> JSONResponse:
    """Cancel a running generation (artifacts are removed)."""
    cancelled = await request.app.state.manager.cancel(session_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"No cancellable session '{session_id}'.")
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "cancelled", "session_id": session_id},
    )


@app.get("/config")
async def get_config(request: Request) -> dict[str, Any]:
    return request.app.state.config.model_dump()


@app.put("/config")
async def put_config(request: Request) -> dict[str, Any]:
    """Merge a partial patch into the active config and persist it.

    Applies to the next client connection; a running conversation keeps the
    config it started with.
    """
    try:
        patch = await request.json()
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")
    try:
        updated = request.app.state.config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid config: {exc.errors()}") from exc

    request.app.state.config = updated
    try:
        updated.save(CONFIG_PATH)
    except OSError as exc:
        log.warning("event=config_persist_failed path=%s error=%s", CONFIG_PATH, exc)
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return updated.model_dump()


if STATIC_DIR:
    @app.get("/")
    async def index() -> FileResponse:
        return FileResponse(Path(STATIC_DIR) / "index.html")


@app.websocket("/ws")
async def ws_conversation(ws: WebSocket) -> None:
    """
    Voice conversation.  Client → server: raw linear16 mic frames (binary),
    plus ``{"type": "cancel"}`` to stop a running generation.
    Server → client: agent speech (binary) and JSON events:
    ``text``, ``phase_transition``, ``codegen-*``, ``error``.
    """
    await ws.accept()
    state = ws.app.state
    config: EngineConfig = state.config
    client = ClientChannel(ws)
    agent = AgentConnection(
        config.agent,
        config.audio,
        api_key=state.deepgram_api_key,
        think_api_key=state.think_api_key,
    )
    relay = ConversationRelay(client, agent, state.manager, config)
    await state.hub.attach(relay)
    log.info("event=client_connected remote=%s", ws.client)
    try:
        await relay.run()
    finally:
        state.hub.detach(relay)
        log.info("event=client_session_ended remote=%s", ws.client)


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream.  Each record arrives as
    ``{"level", "logger", "msg", "ts"}``.
    """
    try:
        await broadcaster.attach(ws)
        while True:
            await ws.receive_text()  # read-only stream; inbound frames are ignored
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.detach(ws)


def main() -> None:
    import uvicorn

    uvicorn.run(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="debug" if os.getenv("VOICE_DEBUG") else "info",
    )


if __name__ == "__main__":
    main()
