from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
import webbrowser
from typing import Any, Dict, List, Optional

import httpx
import uvicorn

from agent_canvas.errors import SnapshotLoadError
from agent_canvas.service.app import create_app
from agent_canvas.settings import Settings

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="agent-canvas", description="Live HTML canvas that agents render into.")
    ap.add_argument("--port", type=int, default=None, help="HTTP + WebSocket port (default 3333)")
    ap.add_argument("--host", default=None, help="bind address (default 127.0.0.1)")
    ap.add_argument("--root", default=None, help="project root for push/pull paths (default: cwd)")
    ap.add_argument("--state-file", default=None, help="snapshot file (default: <root>/.agent-canvas/state.json)")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    ap.add_argument("--no-open", action="store_true", help="do not open the canvas in a browser")
    return ap


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.host is not None:
        overrides["host"] = args.host
    if args.root is not None:
        overrides["project_root"] = args.root
    if args.state_file is not None:
        overrides["state_file_path"] = args.state_file
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.no_open:
        overrides["open_browser"] = False
    return Settings(**overrides)


def banner(settings: Settings) -> str:
    url = f"http://localhost:{settings.port}"
    return (
        "\n"
        "  agent-canvas\n"
        "\n"
        f"  Canvas:  {url}\n"
        f"  WS:      ws://localhost:{settings.port}/ws\n"
        f"  State:   {settings.state_file()}\n"
        "\n"
        "  Usage:\n"
        f"    curl -X POST {url}/render \\\n"
        '      -H "Content-Type: application/json" \\\n'
        "      -d '{\"html\": \"<h1>Hello from agent</h1>\"}'\n"
    )


def open_when_ready(url: str, *, timeout_s: float = 10.0, interval_s: float = 0.2) -> bool:
    """Poll /health until the server answers, then open the canvas in a browser."""
    t0 = time.time()
    with httpx.Client(timeout=2.0) as client:
        while time.time() - t0 < timeout_s:
            try:
                if client.get(f"{url}/health").status_code == 200:
                    webbrowser.open(url)
                    return True
            except httpx.HTTPError:
                pass
            time.sleep(interval_s)
    logger.warning("server did not become healthy within %.0fs; not opening a browser", timeout_s)
    return False


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        app = create_app(settings)
    except SnapshotLoadError as e:
        print(f"agent-canvas: {e}", file=sys.stderr)
        sys.exit(1)

    print(banner(settings))
    if settings.open_browser:
        url = f"http://localhost:{settings.port}"
        threading.Thread(target=open_when_ready, args=(url,), name="agent_canvas_open_browser", daemon=True).start()

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
