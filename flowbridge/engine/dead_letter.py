"""Bounded in-memory store for records skipped during mapping runs."""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import ExecutionError


@dataclass(slots=True)
class DeadLetter:
    """A record that could not be delivered, with the error that stopped it."""

    record: Any
    error: ExecutionError
    context_id: str | None = None
    mapping_id: str | None = None
    stage: str = "process"
    attempts: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def kind(self) -> str:
        return self.error.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": self.record,
            "error": self.error.to_dict(),
            "kind": self.kind,
            "context_id": self.context_id,
            "mapping_id": self.mapping_id,
            "stage": self.stage,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
        }


class DeadLetterQueue:
    """
    Thread-safe FIFO of dead letters capped at ``max_size`` entries.

    When full, the oldest entry is evicted and counted in ``dropped``.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: deque[DeadLetter] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._total = 0
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, entry: DeadLetter) -> DeadLetter:
        with self._lock:
            if len(self._entries) == self.max_size:
                self.dropped += 1
            self._entries.append(entry)
            self._total += 1
        return entry

    def entries(
        self,
        *,
        context_id: str | None = None,
        mapping_id: str | None = None,
        kind: str | None = None,
        stage: str | None = None,
        limit: int | None = None,
    ) -> list[DeadLetter]:
        """Return matching entries, oldest first; ``limit`` keeps the newest ones."""

        with self._lock:
            snapshot = list(self._entries)
        matches = [
            entry
            for entry in snapshot
            if (context_id is None or entry.context_id == context_id)
            and (mapping_id is None or entry.mapping_id == mapping_id)
            and (kind is None or entry.kind == kind)
            and (stage is None or entry.stage == stage)
        ]
        if limit is not None:
            matches = matches[-limit:] if limit > 0 else []
        return matches

    def drain(self, *, context_id: str | None = None) -> list[DeadLetter]:
        """Remove and return entries, optionally only those of one context."""

        with self._lock:
            if context_id is None:
                drained = list(self._entries)
                self._entries.clear()
                return drained
            drained = [entry for entry in self._entries if entry.context_id == context_id]
            kept = [entry for entry in self._entries if entry.context_id != context_id]
            self._entries.clear()
            self._entries.extend(kept)
            return drained

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            snapshot = list(self._entries)
            total = self._total
            dropped = self.dropped
        return {
            "size": len(snapshot),
            "max_size": self.max_size,
            "total_added": total,
            "dropped": dropped,
            "by_kind": dict(Counter(entry.kind for entry in snapshot)),
            "by_stage": dict(Counter(entry.stage for entry in snapshot)),
            "by_mapping": dict(Counter(entry.mapping_id or "-" for entry in snapshot)),
            "oldest": snapshot[0].created_at.isoformat() if snapshot else None,
            "newest": snapshot[-1].created_at.isoformat() if snapshot else None,
        }
