from __future__ import annotations

import os
from typing import Iterable

from agent_canvas.errors import PathOutOfBounds, ReservedPath


def _is_within(path: str, base: str) -> bool:
    if path == base:
        return True
    prefix = base if base.endswith(os.sep) else base + os.sep
    return path.startswith(prefix)


def resolve_within_root(root: str, user_path: str, *, reserved: Iterable[str] = ()) -> str:
    """
    Resolve `user_path` (relative to `root`, or absolute) and require the result to be
    `root` itself or strictly beneath it. Symlinks are resolved on both sides, so a link
    pointing outside the root is rejected too. Nothing is created or opened.

    `reserved` lists files or directories inside the root that user paths may not touch
    (the canvas's own snapshot and audit trail); a hit raises ReservedPath.

    Raises PathOutOfBounds; never raises OSError for missing targets.
    """
    root_abs = os.path.realpath(root)
    target = os.path.realpath(os.path.join(root_abs, user_path))
    if not _is_within(target, root_abs):
        raise PathOutOfBounds(user_path, root_abs)
    for r in reserved:
        r_abs = os.path.realpath(r)
        if _is_within(target, r_abs):
            raise ReservedPath(user_path, r_abs)
    return target
