from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

import pytest

from agent_canvas.errors import (
    FileIOError,
    InvalidPanelName,
    LastPanelError,
    PanelConflict,
    PanelNotFound,
    PathOutOfBounds,
    PersistenceError,
    ReservedPath,
)
from agent_canvas.integrations.broadcast import BroadcastHub
from agent_canvas.panels.store import PanelStore
from agent_canvas.persistence.snapshot import SnapshotFile, load_panels
from agent_canvas.telemetry.audit import AuditLogger, tail_jsonl


class Recorder:
    def __init__(self) -> None:
        self.messages: List[dict] = []

    def send(self, message: str) -> None:
        self.messages.append(json.loads(message))

    @property
    def types(self) -> List[str]:
        return [m["type"] for m in self.messages]


class FlakySnapshot(SnapshotFile):
    """Fails every save while `failing` is set."""

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.failing = False
        self.saves = 0

    def save(self, panels: Mapping[str, str], *, generation: int | None = None) -> None:
        self.saves += 1
        if self.failing:
            raise PersistenceError("disk full")
        super().save(panels, generation=generation)


def make_store(tmp_path: Path, panels: Dict[str, str] | None = None) -> Tuple[PanelStore, FlakySnapshot, Recorder]:
    root = tmp_path / "root"
    root.mkdir(exist_ok=True)
    snapshot = FlakySnapshot(str(tmp_path / "state.json"))
    hub = BroadcastHub()
    rec = Recorder()
    hub.subscribe(rec)
    store = PanelStore(panels or {}, snapshot=snapshot, hub=hub, project_root=str(root))
    return store, snapshot, rec


def run(coro):
    return asyncio.run(coro)


# ---------- open / reads ----------


def test_open_without_snapshot_has_single_default_panel(tmp_path: Path) -> None:
    store = PanelStore.open(SnapshotFile(str(tmp_path / "none.json")), BroadcastHub(), project_root=str(tmp_path))
    assert store.list_panels() == ["default"]
    assert store.get_all_panels() == {"default": ""}


def test_open_restores_persisted_panels(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"panels": {"default": "<p>x</p>", "bad name!": "y"}}), encoding="utf-8")
    store = PanelStore.open(SnapshotFile(str(path)), BroadcastHub(), project_root=str(tmp_path))
    assert store.get_all_panels() == {"default": "<p>x</p>"}


def test_bootstrap_events_cover_every_panel(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path, {"a": "1", "b": "2"})
    assert [(e.panel, e.html) for e in store.bootstrap_events()] == [("a", "1"), ("b", "2")]


def test_get_all_panels_is_a_copy(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    store.get_all_panels()["default"] = "tampered"
    assert store.get_panel("default") == ""


# ---------- render ----------


def test_render_without_name_targets_default_and_persists(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    assert run(store.render_panel(None, "<h1>hi</h1>")) == "default"
    assert store.get_panel("default") == "<h1>hi</h1>"
    doc = json.loads(Path(snapshot.path).read_text(encoding="utf-8"))
    assert doc["panels"]["default"] == "<h1>hi</h1>"
    assert rec.messages == [{"type": "render", "panel": "default", "html": "<h1>hi</h1>"}]


def test_render_new_panel_emits_created_then_render(tmp_path: Path) -> None:
    store, _, rec = make_store(tmp_path)
    run(store.render_panel(" sidebar ", "<p>s</p>"))
    assert store.list_panels() == ["default", "sidebar"]
    assert rec.types == ["panel_created", "render"]


def test_render_accepts_empty_content(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path, {"default": "<p>x</p>"})
    run(store.render_panel("default", ""))
    assert store.get_panel("default") == ""


def test_render_invalid_name_has_no_side_effects(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    with pytest.raises(InvalidPanelName):
        run(store.render_panel("../evil", "<p>x</p>"))
    assert store.list_panels() == ["default"]
    assert snapshot.saves == 0
    assert rec.messages == []


def test_render_rollback_removes_new_panel(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    snapshot.failing = True
    before = store.get_all_panels()
    with pytest.raises(PersistenceError):
        run(store.render_panel("x", "<p>new</p>"))
    assert store.get_all_panels() == before
    assert "x" not in store.list_panels()
    assert rec.messages == []


def test_render_rollback_restores_previous_content(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path, {"a": "old", "b": "keep"})
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.render_panel("a", "new"))
    assert store.get_all_panels() == {"a": "old", "b": "keep"}
    assert store.list_panels() == ["a", "b"]


# ---------- create ----------


def test_create_named_panel(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    assert run(store.create_panel("nav")) == ("nav", True)
    assert store.get_panel("nav") == ""
    assert load_panels(snapshot.path) == {"default": "", "nav": ""}
    assert rec.types == ["panel_created"]


def test_create_existing_is_idempotent_without_write_or_event(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path, {"default": "", "nav": "<p>n</p>"})
    assert run(store.create_panel("nav")) == ("nav", False)
    assert store.get_panel("nav") == "<p>n</p>"
    assert snapshot.saves == 0
    assert rec.messages == []


def test_create_without_name_generates_one(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    name, created = run(store.create_panel())
    assert created
    assert name.startswith("panel-")
    assert name in store.list_panels()


def test_create_rollback(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.create_panel("nav"))
    assert store.list_panels() == ["default"]
    assert rec.messages == []


# ---------- rename ----------


def test_rename_moves_content_in_place(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path, {"a": "1", "b": "2", "c": "3"})
    assert run(store.rename_panel("b", "z")) == "z"
    assert store.list_panels() == ["a", "z", "c"]
    assert store.get_panel("z") == "2"
    assert load_panels(snapshot.path) == {"a": "1", "z": "2", "c": "3"}
    assert rec.messages == [{"type": "panel_renamed", "old": "b", "new": "z"}]


def test_rename_missing_source(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    with pytest.raises(PanelNotFound):
        run(store.rename_panel("ghost", "x"))


def test_rename_onto_existing_panel_conflicts(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path, {"a": "1", "b": "2"})
    with pytest.raises(PanelConflict):
        run(store.rename_panel("a", "b"))
    assert store.get_all_panels() == {"a": "1", "b": "2"}
    assert snapshot.saves == 0


def test_rename_onto_itself_conflicts(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path, {"a": "1"})
    with pytest.raises(PanelConflict):
        run(store.rename_panel("a", "a"))
    assert store.get_all_panels() == {"a": "1"}
    assert snapshot.saves == 0
    assert rec.messages == []


def test_rename_rollback_restores_name_and_position(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path, {"a": "1", "b": "2", "c": "3"})
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.rename_panel("b", "z"))
    assert store.list_panels() == ["a", "b", "c"]
    assert store.get_all_panels() == {"a": "1", "b": "2", "c": "3"}


# ---------- delete ----------


def test_delete_removes_panel_from_memory_and_disk(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path, {"default": "", "x": "<p>x</p>"})
    assert run(store.delete_panel("x")) == "x"
    assert store.list_panels() == ["default"]
    assert "x" not in load_panels(snapshot.path)
    assert rec.messages == [{"type": "panel_deleted", "panel": "x"}]


def test_delete_last_panel_is_refused(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path)
    with pytest.raises(LastPanelError):
        run(store.delete_panel("default"))
    assert store.get_all_panels() == {"default": ""}
    assert snapshot.saves == 0


def test_delete_missing_panel(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path, {"default": "", "x": ""})
    with pytest.raises(PanelNotFound):
        run(store.delete_panel("ghost"))


def test_delete_rollback_reinserts_at_same_position(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path, {"a": "1", "b": "2", "c": "3"})
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.delete_panel("b"))
    assert store.list_panels() == ["a", "b", "c"]
    assert store.get_panel("b") == "2"


def test_panel_set_never_empties(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)

    async def churn() -> None:
        for i in range(5):
            await store.create_panel(f"p{i}")
        for name in list(store.list_panels()):
            try:
                await store.delete_panel(name)
            except LastPanelError:
                pass

    run(churn())
    assert len(store.list_panels()) == 1


# ---------- pull / push ----------


def test_pull_loads_file_into_panel(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    (Path(store.project_root) / "page.html").write_text("<div>pulled</div>", encoding="utf-8")
    assert run(store.pull_file_into_panel(None, "page.html")) == ("default", "<div>pulled</div>")
    assert load_panels(snapshot.path)["default"] == "<div>pulled</div>"
    assert rec.types == ["render"]


def test_pull_into_new_panel_creates_it(tmp_path: Path) -> None:
    store, _, rec = make_store(tmp_path)
    (Path(store.project_root) / "page.html").write_text("<b>x</b>", encoding="utf-8")
    run(store.pull_file_into_panel("fresh", "page.html"))
    assert rec.types == ["panel_created", "render"]


def test_pull_escape_is_out_of_bounds(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path)
    (tmp_path / "escape.html").write_text("secret", encoding="utf-8")
    with pytest.raises(PathOutOfBounds):
        run(store.pull_file_into_panel(None, "../escape.html"))
    assert store.get_panel("default") == ""
    assert snapshot.saves == 0


def test_pull_missing_file_is_io_error(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    with pytest.raises(FileIOError) as exc:
        run(store.pull_file_into_panel(None, "nope.html"))
    assert exc.value.reason == "not_found"
    assert exc.value.status_code == 404


def test_pull_rolls_back_on_persistence_failure(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path)
    (Path(store.project_root) / "page.html").write_text("<p>p</p>", encoding="utf-8")
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.pull_file_into_panel("other", "page.html"))
    assert store.list_panels() == ["default"]
    assert rec.messages == []


def test_push_writes_panel_to_file(tmp_path: Path) -> None:
    store, snapshot, rec = make_store(tmp_path, {"default": "<h1>saved</h1>"})
    path, written = run(store.push_panel_to_file(None, "out.html"))
    assert Path(path).read_text(encoding="utf-8") == "<h1>saved</h1>"
    assert written == len("<h1>saved</h1>")
    assert snapshot.saves == 0
    assert rec.messages == []


def test_push_unknown_panel(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    with pytest.raises(PanelNotFound):
        run(store.push_panel_to_file("missing", "out.html"))


def test_push_escape_writes_nothing(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path, {"default": "<h1>saved</h1>"})
    with pytest.raises(PathOutOfBounds):
        run(store.push_panel_to_file("default", "../escape.html"))
    assert not (tmp_path / "escape.html").exists()


def test_push_into_missing_directory_is_io_error(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path)
    with pytest.raises(FileIOError) as exc:
        run(store.push_panel_to_file(None, "no/such/dir/out.html"))
    assert exc.value.reason == "not_found"


# ---------- interleaving ----------


class GatedSnapshot(SnapshotFile):
    """Per-generation gates and failures, so tests can finish saves out of order."""

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.gates: Dict[int, threading.Event] = {}
        self.fail: set[int] = set()

    def save(self, panels: Mapping[str, str], *, generation: int | None = None) -> None:
        assert generation is not None
        gate = self.gates.get(generation)
        if gate is not None:
            assert gate.wait(5.0)
        if generation in self.fail:
            raise PersistenceError("disk full")
        super().save(panels, generation=generation)


def test_failed_older_write_does_not_revert_newer_value(tmp_path: Path) -> None:
    snapshot = GatedSnapshot(str(tmp_path / "state.json"))
    store = PanelStore({"a": "orig"}, snapshot=snapshot, hub=BroadcastHub(), project_root=str(tmp_path))
    gate = threading.Event()
    snapshot.gates[1] = gate
    snapshot.fail.add(1)

    async def scenario() -> None:
        first = asyncio.create_task(store.render_panel("a", "one"))
        await asyncio.sleep(0)
        await store.render_panel("a", "two")
        gate.set()
        with pytest.raises(PersistenceError):
            await first

    run(scenario())
    assert store.get_panel("a") == "two"
    assert load_panels(snapshot.path) == {"a": "two"}


def test_different_panels_do_not_conflict_when_saves_finish_out_of_order(tmp_path: Path) -> None:
    snapshot = GatedSnapshot(str(tmp_path / "state.json"))
    store = PanelStore({"default": ""}, snapshot=snapshot, hub=BroadcastHub(), project_root=str(tmp_path))
    gate = threading.Event()
    snapshot.gates[1] = gate

    async def scenario() -> None:
        first = asyncio.create_task(store.render_panel("a", "A"))
        await asyncio.sleep(0)
        await store.render_panel("b", "B")
        gate.set()
        await first

    run(scenario())
    assert load_panels(snapshot.path) == {"default": "", "a": "A", "b": "B"}


# ---------- audit ----------


def test_mutations_are_audited_without_content(tmp_path: Path) -> None:
    audit = AuditLogger(str(tmp_path / "audit" / "audit.jsonl"))
    snapshot = FlakySnapshot(str(tmp_path / "state.json"))
    store = PanelStore({}, snapshot=snapshot, hub=BroadcastHub(), project_root=str(tmp_path), audit=audit)

    run(store.render_panel("a", "<p>secret</p>", correlation_id="c1"))
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.delete_panel("a"))

    records = tail_jsonl(audit.path)
    assert [r.event_type for r in records] == ["panel.rendered", "panel.persist_failed"]
    assert records[0].correlation_id == "c1"
    assert records[0].payload["created"] is True
    assert records[1].payload["rolled_back"] is True
    assert "secret" not in Path(audit.path).read_text(encoding="utf-8")


# ---------- canvas state files are off limits ----------


def make_store_with_state_in_root(tmp_path: Path) -> Tuple[PanelStore, SnapshotFile, AuditLogger]:
    root = tmp_path / "root"
    root.mkdir()
    snapshot = SnapshotFile(str(root / ".agent-canvas" / "state.json"))
    audit = AuditLogger(str(root / ".agent-canvas" / "audit.jsonl"))
    store = PanelStore({}, snapshot=snapshot, hub=BroadcastHub(), project_root=str(root), audit=audit)
    return store, snapshot, audit


def test_push_cannot_overwrite_snapshot(tmp_path: Path) -> None:
    store, snapshot, _ = make_store_with_state_in_root(tmp_path)
    run(store.render_panel(None, "<h1>hi</h1>"))
    with pytest.raises(ReservedPath) as exc:
        run(store.push_panel_to_file("default", ".agent-canvas/state.json"))
    assert exc.value.kind == "out_of_bounds"
    assert snapshot.load() == {"default": "<h1>hi</h1>"}


@pytest.mark.parametrize("target", [".agent-canvas/audit.jsonl", ".agent-canvas/other.html", ".agent-canvas"])
def test_push_into_state_directory_is_refused(tmp_path: Path, target: str) -> None:
    store, _, _ = make_store_with_state_in_root(tmp_path)
    with pytest.raises(ReservedPath):
        run(store.push_panel_to_file(None, target))
    assert not (Path(store.project_root) / ".agent-canvas" / "other.html").exists()


def test_pull_cannot_read_audit_trail(tmp_path: Path) -> None:
    store, _, audit = make_store_with_state_in_root(tmp_path)
    run(store.create_panel("nav"))
    with pytest.raises(ReservedPath):
        run(store.pull_file_into_panel("nav", audit.path))
    assert store.get_panel("nav") == ""


def test_snapshot_beside_root_files_only_reserves_itself(tmp_path: Path) -> None:
    snapshot = SnapshotFile(str(tmp_path / "state.json"))
    store = PanelStore({"default": "<p>x</p>"}, snapshot=snapshot, hub=BroadcastHub(), project_root=str(tmp_path))
    path, _ = run(store.push_panel_to_file(None, "page.html"))
    assert Path(path).read_text(encoding="utf-8") == "<p>x</p>"
    with pytest.raises(ReservedPath):
        run(store.push_panel_to_file(None, "state.json"))


# ---------- revision stamps ----------


def test_removed_names_drop_their_revision_stamp(tmp_path: Path) -> None:
    store, _, _ = make_store(tmp_path, {"default": "", "a": "1"})
    run(store.rename_panel("a", "b"))
    run(store.delete_panel("b"))
    for i in range(3):
        run(store.create_panel(f"tmp{i}"))
        run(store.delete_panel(f"tmp{i}"))
    assert set(store._revisions) <= set(store.list_panels())


def test_failed_delete_keeps_revision_stamp_for_rollback(tmp_path: Path) -> None:
    store, snapshot, _ = make_store(tmp_path, {"default": "", "x": "1"})
    run(store.render_panel("x", "2"))
    snapshot.failing = True
    with pytest.raises(PersistenceError):
        run(store.delete_panel("x"))
    assert store.get_panel("x") == "2"
    assert "x" in store._revisions
