from __future__ import annotations

import errno


class CanvasError(Exception):
    """
    Base class for every failure the canvas core reports to its caller.

    `kind` is the stable machine-readable tag returned in API error bodies;
    `status_code` is what the HTTP boundary answers with.
    """

    kind: str = "error"
    status_code: int = 500

    def to_dict(self) -> dict[str, object]:
        return {"ok": False, "error": str(self), "kind": self.kind}


class InvalidPanelName(CanvasError):
    kind = "invalid_name"
    status_code = 400


class PanelNotFound(CanvasError):
    kind = "not_found"
    status_code = 404

    def __init__(self, name: str) -> None:
        super().__init__(f'panel "{name}" not found')
        self.name = name


class PanelConflict(CanvasError):
    kind = "conflict"
    status_code = 409

    def __init__(self, name: str) -> None:
        super().__init__(f'panel "{name}" already exists')
        self.name = name


class LastPanelError(CanvasError):
    kind = "last_panel"
    status_code = 400

    def __init__(self, name: str) -> None:
        super().__init__(f'cannot delete "{name}": at least one panel must remain')
        self.name = name


class PathOutOfBounds(CanvasError):
    kind = "out_of_bounds"
    status_code = 400

    def __init__(self, path: str, root: str) -> None:
        super().__init__(f'path "{path}" escapes project root {root}')
        self.path = path
        self.root = root


class ReservedPath(PathOutOfBounds):
    """Target is the canvas's own snapshot or audit file, or sits in its state directory."""

    def __init__(self, path: str, reserved: str) -> None:
        CanvasError.__init__(self, f'path "{path}" is reserved for canvas state ({reserved})')
        self.path = path
        self.reserved = reserved


class FileIOError(CanvasError):
    """Read/write failure on a push/pull target. `reason` is not_found, permission or other."""

    kind = "io_error"

    def __init__(self, message: str, *, path: str, reason: str = "other") -> None:
        super().__init__(message)
        self.path = path
        self.reason = reason

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.reason == "not_found":
            return 404
        if self.reason == "permission":
            return 403
        return 500

    @classmethod
    def from_os_error(cls, exc: OSError, *, path: str) -> "FileIOError":
        if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
            reason = "not_found"
        elif isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
            reason = "permission"
        else:
            reason = "other"
        detail = exc.strerror or str(exc)
        return cls(f"{detail}: {path}", path=path, reason=reason)

    def to_dict(self) -> dict[str, object]:
        out = super().to_dict()
        out["reason"] = self.reason
        return out


class PersistenceError(CanvasError):
    kind = "persistence_error"
    status_code = 500


class SnapshotLoadError(PersistenceError):
    kind = "snapshot_load_error"


class ScreenshotError(CanvasError):
    kind = "screenshot_failed"
    status_code = 503
