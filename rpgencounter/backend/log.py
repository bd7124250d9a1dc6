"""Append-only narrative log with independently navigable alternatives (swipes).

Every entry holds a non-empty list of text alternatives. Regeneration appends
a new alternative and moves the cursor to it; nothing is ever overwritten, so
earlier generations stay available for comparison.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from rpgencounter.backend.errors import EntityNotFoundError, ValidationError


class LogKind(str, Enum):
    NARRATIVE = "narrative"
    SYSTEM = "system"
    ERROR = "error"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogEntry:
    id: int
    kind: LogKind
    swipes: list[str]
    active_swipe_index: int = 0
    created_at: str = field(default_factory=_utc_now_iso)
    # Opaque data the engine needs to regenerate this entry.
    origin: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return self.swipes[self.active_swipe_index]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "swipes": list(self.swipes),
            "activeSwipeIndex": self.active_swipe_index,
            "createdAt": self.created_at,
        }
        if self.origin is not None:
            payload["origin"] = self.origin
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LogEntry":
        swipes = [str(text) for text in payload.get("swipes") or []]
        if not swipes:
            raise ValidationError(f"log entry {payload.get('id')!r} has no swipes")
        index = payload.get("activeSwipeIndex", 0)
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(swipes):
            index = len(swipes) - 1
        origin = payload.get("origin")
        return cls(
            id=int(payload["id"]),
            kind=LogKind(payload.get("kind", LogKind.SYSTEM.value)),
            swipes=swipes,
            active_swipe_index=index,
            created_at=str(payload.get("createdAt") or _utc_now_iso()),
            origin=dict(origin) if isinstance(origin, Mapping) else None,
        )


class LogManager:
    """Operates in place on a list of entries owned by the session."""

    def __init__(self, entries: list[LogEntry] | None = None) -> None:
        self._entries = entries if entries is not None else []
        self._next_id = max((entry.id for entry in self._entries), default=0) + 1

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def get(self, entry_id: int) -> LogEntry:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        raise EntityNotFoundError(f"no log entry with id {entry_id}")

    def append_entry(self, kind: LogKind, text: str, origin: dict[str, Any] | None = None) -> LogEntry:
        entry = LogEntry(id=self._next_id, kind=LogKind(kind), swipes=[text], origin=origin)
        self._next_id += 1
        self._entries.append(entry)
        return entry

    def add_swipe(self, entry_id: int, text: str) -> LogEntry:
        entry = self.get(entry_id)
        entry.swipes.append(text)
        entry.active_swipe_index = len(entry.swipes) - 1
        return entry

    def set_active_swipe(self, entry_id: int, index: int) -> LogEntry:
        entry = self.get(entry_id)
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(entry.swipes):
            raise ValidationError(f"swipe index {index!r} out of range for entry {entry_id}")
        entry.active_swipe_index = index
        return entry

    def restore_from_snapshot(self, entries: Iterable[LogEntry | Mapping[str, Any]]) -> None:
        restored: list[LogEntry] = []
        seen: set[int] = set()
        for raw in entries:
            entry = raw if isinstance(raw, LogEntry) else LogEntry.from_dict(raw)
            if entry.id in seen:
                continue
            seen.add(entry.id)
            restored.append(entry)
        restored.sort(key=lambda entry: entry.id)
        self._entries[:] = restored
        self._next_id = max((entry.id for entry in restored), default=0) + 1

    def recent(self, limit: int, kind: LogKind | None = None) -> list[LogEntry]:
        selected = [entry for entry in self._entries if kind is None or entry.kind == kind]
        if limit <= 0:
            return []
        return selected[-limit:]
