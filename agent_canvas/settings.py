from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENT_CANVAS_", extra="ignore")

    host: str = "127.0.0.1"
    port: int = 3333

    # Push/pull paths are confined to this directory.
    project_root: str = "."

    # Relative paths below are resolved against project_root.
    state_file_path: str = ".agent-canvas/state.json"
    audit_log_path: str = ".agent-canvas/audit.jsonl"
    audit_enabled: bool = True

    # Base URL the screenshot tool loads /canvas from (defaults to http://{host}:{port}).
    public_base_url: str | None = None
    open_browser: bool = True
    log_level: str = "INFO"

    # Outbound messages a viewer may have queued before it is dropped as too slow.
    ws_max_pending: int = 256

    # Screenshot capture (external agent-browser CLI)
    screenshot_default_width: int = 1280
    screenshot_default_height: int = 800
    screenshot_max_dimension: int = 4096
    screenshot_wait_ms: int = 800
    screenshot_timeout_s: float = 60.0
    agent_browser_bin: str = "agent-browser"

    def root_dir(self) -> str:
        return os.path.realpath(self.project_root or ".")

    def _under_root(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.root_dir(), path)

    def state_file(self) -> str:
        return self._under_root(self.state_file_path)

    def audit_file(self) -> str:
        return self._under_root(self.audit_log_path)

    def base_url(self) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        return f"http://{self.host}:{self.port}"
