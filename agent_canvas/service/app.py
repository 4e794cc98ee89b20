from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, Response

from agent_canvas.errors import CanvasError, ScreenshotError
from agent_canvas.integrations.broadcast import BroadcastHub, WebSocketSubscriber
from agent_canvas.models import CreatePanelRequest, FileTransferRequest, RenamePanelRequest, RenderRequest
from agent_canvas.panels.store import PanelStore
from agent_canvas.persistence.snapshot import SnapshotFile
from agent_canvas.screenshot.agent_browser import ScreenshotCapture, capture_screenshot_via_agent_browser
from agent_canvas.service.ui import render_canvas_html
from agent_canvas.settings import Settings
from agent_canvas.telemetry.audit import AuditLogger, tail_jsonl

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

router = APIRouter()


def create_app(settings: Settings | None = None, *, capture: ScreenshotCapture | None = None) -> FastAPI:
    """
    App factory used by the CLI and tests.

    Each call builds its own store and hub and hangs them on `app.state`, so several apps
    (one per test) never share panels or viewers. Raises SnapshotLoadError if the snapshot
    file exists but is not JSON.
    """
    s = settings or Settings()
    audit = AuditLogger(s.audit_file()) if s.audit_enabled else None
    hub = BroadcastHub()
    store = PanelStore.open(SnapshotFile(s.state_file()), hub, project_root=s.root_dir(), audit=audit)

    if capture is None:
        capture = functools.partial(
            capture_screenshot_via_agent_browser,
            bin_name=s.agent_browser_bin,
            wait_ms=s.screenshot_wait_ms,
            timeout_s=s.screenshot_timeout_s,
        )

    app = FastAPI(title="agent-canvas", version=VERSION)
    app.state.settings = s
    app.state.hub = hub
    app.state.store = store
    app.state.audit = audit
    app.state.capture = capture
    app.add_exception_handler(CanvasError, _canvas_error_handler)
    app.include_router(router)
    return app


async def _canvas_error_handler(request: Request, exc: CanvasError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def _missing(field: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": f"missing {field} field"}, status_code=400)


def _correlation_id(request: Request) -> str | None:
    return request.headers.get("x-correlation-id") or None


def _no_store_html(content: str) -> HTMLResponse:
    # Avoid browser caching stale page JS embedded in the HTML string.
    return HTMLResponse(content=content, headers={"Cache-Control": "no-store, max-age=0", "Pragma": "no-cache"})


# ---------- Pages ----------


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    return _no_store_html(render_canvas_html())


@router.get("/canvas", response_class=HTMLResponse)
def canvas(request: Request) -> HTMLResponse:
    return _no_store_html(render_canvas_html())


@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    store: PanelStore = request.app.state.store
    hub: BroadcastHub = request.app.state.hub
    return {"ok": True, "version": VERSION, "panels": len(store.list_panels()), "viewers": len(hub)}


# ---------- Panel content ----------


@router.post("/render")
async def render(body: RenderRequest, request: Request) -> Any:
    if body.html is None:
        return _missing("html")
    store: PanelStore = request.app.state.store
    panel = await store.render_panel(body.panel, body.html, correlation_id=_correlation_id(request))
    return {"ok": True, "panel": panel}


@router.post("/push")
async def push(body: FileTransferRequest, request: Request) -> Any:
    if not body.path:
        return _missing("path")
    store: PanelStore = request.app.state.store
    path, written = await store.push_panel_to_file(body.panel, body.path, correlation_id=_correlation_id(request))
    return {"ok": True, "path": path, "bytes": written}


@router.post("/pull")
async def pull(body: FileTransferRequest, request: Request) -> Any:
    if not body.path:
        return _missing("path")
    store: PanelStore = request.app.state.store
    panel, html = await store.pull_file_into_panel(body.panel, body.path, correlation_id=_correlation_id(request))
    return {"ok": True, "panel": panel, "html": html}


@router.get("/state")
def state(request: Request) -> Dict[str, Any]:
    store: PanelStore = request.app.state.store
    return {"panels": store.get_all_panels()}


# ---------- Panel lifecycle ----------


@router.get("/panels")
def list_panels(request: Request) -> Dict[str, Any]:
    store: PanelStore = request.app.state.store
    return {"panels": store.list_panels()}


@router.post("/panels")
async def create_panel(request: Request, body: Optional[CreatePanelRequest] = None) -> Any:
    store: PanelStore = request.app.state.store
    name = body.name if body is not None else None
    panel, created = await store.create_panel(name, correlation_id=_correlation_id(request))
    return {"ok": True, "panel": panel, "created": created}


@router.patch("/panels/{name}")
async def rename_panel(name: str, body: RenamePanelRequest, request: Request) -> Any:
    if body.new_name is None:
        return _missing("newName")
    store: PanelStore = request.app.state.store
    panel = await store.rename_panel(name, body.new_name, correlation_id=_correlation_id(request))
    return {"ok": True, "panel": panel}


@router.delete("/panels/{name}")
async def delete_panel(name: str, request: Request) -> Any:
    store: PanelStore = request.app.state.store
    panel = await store.delete_panel(name, correlation_id=_correlation_id(request))
    return {"ok": True, "panel": panel}


# ---------- Screenshot ----------


def _clamp(value: int, *, upper: int) -> int:
    return max(100, min(int(value), upper))


@router.get("/screenshot")
async def screenshot(request: Request, width: Optional[int] = None, height: Optional[int] = None) -> Response:
    s: Settings = request.app.state.settings
    capture: ScreenshotCapture = request.app.state.capture
    w = _clamp(width or s.screenshot_default_width, upper=s.screenshot_max_dimension)
    h = _clamp(height or s.screenshot_default_height, upper=s.screenshot_max_dimension)
    target_url = f"{s.base_url()}/canvas"
    try:
        png = await asyncio.to_thread(capture, target_url, w, h)
    except Exception as e:  # noqa: BLE001
        logger.warning("screenshot of %s failed: %s", target_url, e)
        err = e if isinstance(e, ScreenshotError) else ScreenshotError(str(e))
        return JSONResponse(err.to_dict(), status_code=err.status_code)
    return Response(content=png, media_type="image/png")


# ---------- Audit ----------


@router.get("/api/audit/recent")
def audit_recent(request: Request, n: int = 200) -> JSONResponse:
    s: Settings = request.app.state.settings
    records = [asdict(r) for r in tail_jsonl(s.audit_file(), max_lines=max(1, min(n, 2000)))]
    return JSONResponse({"records": records})


# ---------- Live viewers ----------


@router.websocket("/ws")
async def canvas_ws(websocket: WebSocket) -> None:
    s: Settings = websocket.app.state.settings
    store: PanelStore = websocket.app.state.store
    hub: BroadcastHub = websocket.app.state.hub

    await websocket.accept()
    replay = store.bootstrap_events()
    sub = WebSocketSubscriber(websocket, max_pending=s.ws_max_pending + len(replay))
    # Replay and registration happen with no await in between, so no live event can slip past.
    if not hub.subscribe(sub, replay=replay):
        await websocket.close(code=1011)
        return
    logger.debug("viewer connected; replayed %d panel(s)", len(replay))
    writer = asyncio.create_task(sub.run())
    try:
        while True:
            # Viewers do not send anything meaningful; reading just detects disconnects.
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
        logger.debug("viewer disconnected")
    except WebSocketDisconnect:
        logger.debug("viewer disconnected")
    finally:
        hub.unsubscribe(sub)
        sub.close()
        try:
            await asyncio.wait_for(writer, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            writer.cancel()
