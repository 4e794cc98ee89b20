from __future__ import annotations

import json
import logging
import os
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class AuditRecord:
    """One JSONL line. Payloads carry names, paths and sizes, never panel content."""

    ts: str
    correlation_id: str
    actor: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, line: str) -> Optional["AuditRecord"]:
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict):
            return None
        payload = obj.get("payload")
        return cls(
            ts=str(obj.get("ts", "")),
            correlation_id=str(obj.get("correlation_id", "")),
            actor=str(obj.get("actor", "")),
            event_type=str(obj.get("event_type", "")),
            payload=payload if isinstance(payload, dict) else {},
        )


class AuditLogger:
    """
    Append-only JSONL trail of panel mutations. Never fails the caller: write errors
    are logged and dropped.
    """

    def __init__(self, path: str, *, actor: str = "agent-canvas"):
        self.path = path
        self.actor = actor
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        record = AuditRecord(
            ts=_utc_stamp(),
            correlation_id=correlation_id,
            actor=self.actor,
            event_type=event_type,
            payload=payload,
        )
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(record), ensure_ascii=False) + "\n")
        except OSError:
            logger.warning("could not append audit record %s to %s", event_type, self.path, exc_info=True)


def tail_jsonl(path: str, *, max_lines: int = 200) -> List[AuditRecord]:
    """Last `max_lines` parseable records, oldest first. A missing or unreadable trail is empty."""
    if max_lines <= 0:
        return []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = deque(f, maxlen=max_lines)
    except OSError:
        return []
    records = (AuditRecord.from_json(ln) for ln in lines if ln.strip())
    return [r for r in records if r is not None]
