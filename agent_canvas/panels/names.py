from __future__ import annotations

import re
import uuid

from agent_canvas.errors import InvalidPanelName

DEFAULT_PANEL = "default"

# Names double as snapshot keys and DOM selector values in the viewer.
PANEL_NAME_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")


def is_valid_panel_name(name: object) -> bool:
    return isinstance(name, str) and PANEL_NAME_RE.fullmatch(name) is not None


def normalize_panel_name(raw: object) -> str:
    """
    Trim and validate a panel identifier. Raises InvalidPanelName.
    """
    if not isinstance(raw, str):
        raise InvalidPanelName(f"panel name must be a string, got {type(raw).__name__}")
    name = raw.strip()
    if not is_valid_panel_name(name):
        raise InvalidPanelName(f'invalid panel name "{raw}": use 1-64 of [A-Za-z0-9._-]')
    return name


def generate_panel_name() -> str:
    return f"panel-{uuid.uuid4().hex[:8]}"
