from __future__ import annotations

import itertools
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from agent_canvas.errors import PersistenceError, SnapshotLoadError
from agent_canvas.models import StoredCanvasState
from agent_canvas.panels.names import is_valid_panel_name

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def load_panels(path: str) -> Dict[str, str]:
    """
    Read the snapshot file at `path`.

    - Missing file: first run, returns {}.
    - Not JSON: raises SnapshotLoadError.
    - JSON of the wrong shape, non-string content, or invalid names: those entries
      are dropped and the rest kept.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError:
        return {}
    except OSError as e:
        raise SnapshotLoadError(f"could not read snapshot {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SnapshotLoadError(f"snapshot {path} is not UTF-8 text: {e}") from e

    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SnapshotLoadError(f"snapshot {path} is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        logger.warning("snapshot %s has unexpected top-level type %s; ignoring", path, type(parsed).__name__)
        return {}
    entries = parsed.get("panels")
    if not isinstance(entries, dict):
        if entries is not None:
            logger.warning("snapshot %s: 'panels' is not an object; ignoring", path)
        return {}

    panels: Dict[str, str] = {}
    dropped = 0
    for name, html in entries.items():
        if is_valid_panel_name(name) and isinstance(html, str):
            panels[name] = html
        else:
            dropped += 1
    if dropped:
        logger.warning("snapshot %s: dropped %d invalid panel entr%s", path, dropped, "y" if dropped == 1 else "ies")
    return panels


def serialize_snapshot(panels: Mapping[str, str], *, updated_at: str | None = None) -> str:
    state = StoredCanvasState(updated_at=updated_at or _utc_now_iso(), panels=dict(panels))
    return json.dumps(state.model_dump(by_alias=True), indent=2, ensure_ascii=False) + "\n"


def _write_atomic(path: str, text: str) -> str:
    """
    Write `text` to a unique temp file beside `path` and fsync it. Returns the temp path;
    the caller renames it into place (or removes it).
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        _discard(tmp_path)
        raise
    return tmp_path


def _discard(tmp_path: str) -> None:
    try:
        os.unlink(tmp_path)
    except FileNotFoundError:
        pass


def save_panels(path: str, panels: Mapping[str, str]) -> None:
    """
    Crash-safe full rewrite: temp sibling + fsync + os.replace. The target is always
    either the previous complete snapshot or the new one.
    """
    SnapshotFile(path).save(panels)


class SnapshotFile:
    """
    The single durable file behind a PanelStore.

    `begin()` is called on the event loop at the moment the map is captured and hands
    out increasing generations; `save()` runs in a worker thread. A write that finishes
    after a newer generation was already renamed into place is discarded instead of
    renamed, so completions arriving out of order never regress the file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._generations = itertools.count(1)
        self._commit_lock = threading.Lock()
        self._committed = 0

    def load(self) -> Dict[str, str]:
        return load_panels(self.path)

    def begin(self) -> int:
        return next(self._generations)

    def save(self, panels: Mapping[str, str], *, generation: int | None = None) -> None:
        gen = generation if generation is not None else self.begin()
        try:
            tmp_path = _write_atomic(self.path, serialize_snapshot(panels))
        except OSError as e:
            raise PersistenceError(f"could not write snapshot {self.path}: {e}") from e
        with self._commit_lock:
            if gen < self._committed:
                logger.debug("snapshot generation %d superseded by %d; discarding", gen, self._committed)
                _discard(tmp_path)
                return
            try:
                os.replace(tmp_path, self.path)
            except OSError as e:
                _discard(tmp_path)
                raise PersistenceError(f"could not write snapshot {self.path}: {e}") from e
            self._committed = gen
