from __future__ import annotations

import os
import subprocess
import tempfile
import uuid
from typing import Callable, List

from agent_canvas.errors import ScreenshotError

# capture(url, width, height) -> PNG bytes. Injectable so the server can be tested without a browser.
ScreenshotCapture = Callable[[str, int, int], bytes]


def _run_cli(cmd: List[str], *, timeout_s: float) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, check=False, capture_output=True, text=True, timeout=timeout_s)
    except FileNotFoundError as e:
        raise ScreenshotError(f"{cmd[0]} CLI unavailable; cannot capture screenshot") from e
    except subprocess.TimeoutExpired as e:
        raise ScreenshotError(f"{cmd[0]} timed out after {timeout_s:.0f}s: {' '.join(cmd[1:])}") from e


def ensure_agent_browser_available(*, bin_name: str = "agent-browser", timeout_s: float = 15.0) -> None:
    cp = _run_cli([bin_name, "--help"], timeout_s=timeout_s)
    if cp.returncode != 0:
        raise ScreenshotError(f"{bin_name} CLI unavailable; cannot capture screenshot")


def _run_agent_browser(bin_name: str, args: List[str], *, timeout_s: float) -> None:
    cp = _run_cli([bin_name, *args], timeout_s=timeout_s)
    if cp.returncode == 0:
        return
    detail = (cp.stderr or cp.stdout or f"exit {cp.returncode}").strip()
    raise ScreenshotError(f"{bin_name} failed: {detail}")


def capture_screenshot_via_agent_browser(
    target_url: str,
    width: int,
    height: int,
    *,
    bin_name: str = "agent-browser",
    wait_ms: int = 800,
    timeout_s: float = 60.0,
) -> bytes:
    """
    Drive the external agent-browser CLI: open the page in a throwaway session, size the
    viewport, let it settle, screenshot to a temp PNG and return its bytes. The session
    is always closed and the temp file removed.
    """
    ensure_agent_browser_available(bin_name=bin_name)
    session = f"agent-canvas-shot-{uuid.uuid4().hex[:12]}"
    output_path = os.path.join(tempfile.gettempdir(), f"{session}.png")
    try:
        _run_agent_browser(bin_name, ["--session", session, "open", target_url], timeout_s=timeout_s)
        _run_agent_browser(bin_name, ["--session", session, "set", "viewport", str(width), str(height)], timeout_s=timeout_s)
        _run_agent_browser(bin_name, ["--session", session, "wait", str(wait_ms)], timeout_s=timeout_s)
        _run_agent_browser(bin_name, ["--session", session, "screenshot", output_path], timeout_s=timeout_s)
        try:
            with open(output_path, "rb") as f:
                return f.read()
        except OSError as e:
            raise ScreenshotError(f"screenshot file missing: {output_path}") from e
    finally:
        try:
            _run_cli([bin_name, "--session", session, "close"], timeout_s=timeout_s)
        except ScreenshotError:
            pass
        try:
            os.unlink(output_path)
        except OSError:
            pass
