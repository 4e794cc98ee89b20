from __future__ import annotations

import asyncio
import itertools
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from agent_canvas.errors import (
    FileIOError,
    LastPanelError,
    PanelConflict,
    PanelNotFound,
    PersistenceError,
)
from agent_canvas.integrations.broadcast import BroadcastHub
from agent_canvas.models import ChangeEvent, PanelCreated, PanelDeleted, PanelRenamed, PanelRendered
from agent_canvas.panels.names import DEFAULT_PANEL, generate_panel_name, normalize_panel_name
from agent_canvas.panels.paths import resolve_within_root
from agent_canvas.persistence.snapshot import SnapshotFile
from agent_canvas.telemetry.audit import AuditLogger

logger = logging.getLogger(__name__)

_MISSING: Any = object()


@dataclass(frozen=True)
class _Prior:
    """What one panel looked like before a mutation touched it."""

    name: str
    content: Any  # str, or _MISSING if the panel did not exist
    index: int
    revision: Optional[int]


def _name_or_default(name: Optional[str]) -> str:
    return normalize_panel_name(DEFAULT_PANEL if name is None or name == "" else name)


def _read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise FileIOError.from_os_error(e, path=path) from e
    except UnicodeDecodeError as e:
        raise FileIOError(f"not UTF-8 text: {path}", path=path) from e


def _write_bytes(path: str, data: bytes) -> None:
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise FileIOError.from_os_error(e, path=path) from e


class PanelStore:
    """
    Authoritative panel map for one server run.

    Every mutation follows the same shape: validate names, check preconditions, record
    the prior value of each touched panel, apply the change in memory, durably save the
    whole map, then either broadcast the change events or restore the prior values and
    re-raise. A caller that sees success is guaranteed the snapshot file holds the change.

    The map is never empty; the last panel cannot be deleted.
    """

    def __init__(
        self,
        panels: Dict[str, str],
        *,
        snapshot: SnapshotFile,
        hub: BroadcastHub,
        project_root: str,
        audit: AuditLogger | None = None,
    ) -> None:
        self._panels: Dict[str, str] = dict(panels) or {DEFAULT_PANEL: ""}
        self._snapshot = snapshot
        self._hub = hub
        self._audit = audit
        self.project_root = project_root
        # Per-panel stamp of the mutation that last wrote it; rollback only undoes its own write.
        self._revisions: Dict[str, int] = {}
        self._rev_counter = itertools.count(1)

    @classmethod
    def open(
        cls,
        snapshot: SnapshotFile,
        hub: BroadcastHub,
        *,
        project_root: str,
        audit: AuditLogger | None = None,
    ) -> "PanelStore":
        """Load the snapshot (SnapshotLoadError if malformed); an empty result yields one default panel."""
        panels = snapshot.load()
        if panels:
            logger.info("loaded %d panel(s) from %s", len(panels), snapshot.path)
        return cls(panels, snapshot=snapshot, hub=hub, project_root=project_root, audit=audit)

    # ---------- reads ----------

    def list_panels(self) -> List[str]:
        return list(self._panels)

    def get_all_panels(self) -> Dict[str, str]:
        return dict(self._panels)

    def get_panel(self, name: str) -> str:
        key = normalize_panel_name(name)
        if key not in self._panels:
            raise PanelNotFound(key)
        return self._panels[key]

    def bootstrap_events(self) -> List[PanelRendered]:
        """Full current state as render events, for a newly connected viewer."""
        return [PanelRendered(panel=name, html=html) for name, html in self._panels.items()]

    # ---------- mutations ----------

    async def render_panel(self, name: Optional[str], html: str, *, correlation_id: str | None = None) -> str:
        key = _name_or_default(name)
        return await self._render(key, html, correlation_id=correlation_id, source=None)

    async def create_panel(self, name: Optional[str] = None, *, correlation_id: str | None = None) -> Tuple[str, bool]:
        """Returns (name, created). An existing name is success without a write or event."""
        if name is None or name == "":
            key = generate_panel_name()
            while key in self._panels:
                key = generate_panel_name()
        else:
            key = normalize_panel_name(name)
        if key in self._panels:
            return key, False

        prior = self._capture(key)
        self._panels[key] = ""
        rev = self._stamp(key)
        await self._commit(
            [prior],
            rev,
            [PanelCreated(panel=key)],
            audit=("panel.created", {"panel": key}),
            correlation_id=correlation_id,
        )
        return key, True

    async def rename_panel(self, old: str, new: str, *, correlation_id: str | None = None) -> str:
        """Moves content from `old` to `new`. Renaming onto any existing name, itself included, is a conflict."""
        src = normalize_panel_name(old)
        dst = normalize_panel_name(new)
        if src not in self._panels:
            raise PanelNotFound(src)
        if dst in self._panels:
            raise PanelConflict(dst)

        priors = [self._capture(src), self._capture(dst)]
        self._panels = {(dst if k == src else k): v for k, v in self._panels.items()}
        rev = self._stamp(src, dst)
        await self._commit(
            priors,
            rev,
            [PanelRenamed(old=src, new=dst)],
            audit=("panel.renamed", {"old": src, "new": dst}),
            correlation_id=correlation_id,
        )
        return dst

    async def delete_panel(self, name: str, *, correlation_id: str | None = None) -> str:
        key = normalize_panel_name(name)
        if key not in self._panels:
            raise PanelNotFound(key)
        if len(self._panels) <= 1:
            raise LastPanelError(key)

        prior = self._capture(key)
        del self._panels[key]
        rev = self._stamp(key)
        await self._commit(
            [prior],
            rev,
            [PanelDeleted(panel=key)],
            audit=("panel.deleted", {"panel": key}),
            correlation_id=correlation_id,
        )
        return key

    async def pull_file_into_panel(
        self, name: Optional[str], path: str, *, correlation_id: str | None = None
    ) -> Tuple[str, str]:
        """Load a file under the project root into a panel. Returns (name, html)."""
        key = _name_or_default(name)
        target = resolve_within_root(self.project_root, path, reserved=self._reserved_paths())
        html = await asyncio.to_thread(_read_text, target)
        await self._render(key, html, correlation_id=correlation_id, source=target)
        return key, html

    async def push_panel_to_file(
        self, name: Optional[str], path: str, *, correlation_id: str | None = None
    ) -> Tuple[str, int]:
        """Write a panel's content to a file under the project root. Returns (absolute path, bytes written)."""
        key = _name_or_default(name)
        if key not in self._panels:
            raise PanelNotFound(key)
        target = resolve_within_root(self.project_root, path, reserved=self._reserved_paths())
        data = self._panels[key].encode("utf-8")
        await asyncio.to_thread(_write_bytes, target, data)
        self._write_audit("panel.pushed", {"panel": key, "path": target, "bytes": len(data)}, correlation_id)
        return target, len(data)

    def _reserved_paths(self) -> List[str]:
        """Snapshot and audit files, plus the snapshot's directory when it is a dedicated folder inside the root."""
        paths = [self._snapshot.path]
        if self._audit is not None:
            paths.append(self._audit.path)
        root = os.path.realpath(self.project_root)
        state_dir = os.path.dirname(os.path.realpath(self._snapshot.path))
        if state_dir.startswith(root + os.sep):
            paths.append(state_dir)
        return paths

    # ---------- protocol internals ----------

    async def _render(self, key: str, html: str, *, correlation_id: str | None, source: str | None) -> str:
        prior = self._capture(key)
        created = prior.content is _MISSING
        self._panels[key] = html
        rev = self._stamp(key)

        events: List[ChangeEvent] = []
        if created:
            events.append(PanelCreated(panel=key))
        events.append(PanelRendered(panel=key, html=html))
        payload: Dict[str, Any] = {"panel": key, "bytes": len(html.encode("utf-8")), "created": created}
        if source:
            payload["source"] = source
        await self._commit([prior], rev, events, audit=("panel.rendered", payload), correlation_id=correlation_id)
        return key

    def _capture(self, name: str) -> _Prior:
        keys = list(self._panels)
        index = keys.index(name) if name in self._panels else len(keys)
        return _Prior(
            name=name,
            content=self._panels.get(name, _MISSING),
            index=index,
            revision=self._revisions.get(name),
        )

    def _stamp(self, *names: str) -> int:
        rev = next(self._rev_counter)
        for n in names:
            self._revisions[n] = rev
        return rev

    async def _commit(
        self,
        priors: Sequence[_Prior],
        rev: int,
        events: Sequence[ChangeEvent],
        *,
        audit: Tuple[str, Dict[str, Any]],
        correlation_id: str | None,
    ) -> None:
        panels = dict(self._panels)
        generation = self._snapshot.begin()
        try:
            await asyncio.to_thread(self._snapshot.save, panels, generation=generation)
        except Exception as e:
            restored = self._rollback(priors, rev)
            logger.warning(
                "persist failed for %s (%s); in-memory change %s",
                audit[0],
                e,
                "rolled back" if restored else "left in place (superseded by a newer write)",
            )
            self._write_audit(
                "panel.persist_failed",
                {"operation": audit[0], "panels": [p.name for p in priors], "error": str(e), "rolled_back": restored},
                correlation_id,
            )
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"could not persist panels: {e}") from e

        # Names this mutation removed no longer need a stamp once the removal is durable.
        for p in priors:
            if p.name not in self._panels and self._revisions.get(p.name) == rev:
                del self._revisions[p.name]
        self._hub.publish(*events)
        self._write_audit(audit[0], audit[1], correlation_id)

    def _rollback(self, priors: Sequence[_Prior], rev: int) -> bool:
        """
        Restore the touched panels to their prior values and positions. Skipped when a
        later mutation has written any of them since.
        """
        if any(self._revisions.get(p.name) != rev for p in priors):
            return False
        touched = {p.name for p in priors}
        items = [(k, v) for k, v in self._panels.items() if k not in touched]
        for p in sorted(priors, key=lambda x: x.index):
            if p.content is not _MISSING:
                items.insert(min(p.index, len(items)), (p.name, p.content))
        self._panels = dict(items)
        for p in priors:
            if p.revision is None:
                self._revisions.pop(p.name, None)
            else:
                self._revisions[p.name] = p.revision
        return True

    def _write_audit(self, event_type: str, payload: Dict[str, Any], correlation_id: str | None) -> None:
        if self._audit is None:
            return
        self._audit.write(correlation_id or self._audit.new_correlation_id(), event_type, payload)
