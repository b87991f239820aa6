"""Bounded TTL cache for rendered diagram artifacts."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from flowchart_ai.domain.rendering import RenderArtifact, RenderOptions
from flowchart_ai.services.clock import Clock, SystemClock


class ArtifactCache(Protocol):
    """Cache interface used by the render stage."""

    def get(self, key: str) -> RenderArtifact | None:
        """Return a cached artifact if present and not expired."""

    def put(self, key: str, artifact: RenderArtifact) -> None:
        """Store an artifact, evicting the oldest entry when full."""


@dataclass
class _CacheEntry:
    artifact: RenderArtifact
    inserted_at: datetime


@dataclass
class RenderCache(ArtifactCache):
    """In-memory FIFO cache with a fixed time-to-live per entry."""

    capacity: int = 1000
    ttl_seconds: float = 1800.0
    clock: Clock = field(default_factory=SystemClock)
    _entries: dict[str, _CacheEntry] = field(default_factory=dict, init=False)

    @staticmethod
    def key(normalized_source: str, options: RenderOptions) -> str:
        """Stable hash of the source plus the options that change the output."""
        payload = json.dumps(
            {"source": normalized_source, **options.cache_fields()},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> RenderArtifact | None:
        """Return the artifact, evicting it first if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self.clock.now()):
            self._entries.pop(key, None)
            return None
        return entry.artifact

    def put(self, key: str, artifact: RenderArtifact) -> None:
        # Re-inserting an existing key refreshes its position.
        self._entries.pop(key, None)
        if len(self._entries) >= self.capacity:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = _CacheEntry(
            artifact=artifact, inserted_at=self.clock.now()
        )

    def purge_expired(self) -> int:
        """Physically drop expired entries; returns how many were removed."""
        now = self.clock.now()
        expired = [
            key for key, entry in self._entries.items() if self._expired(entry, now)
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _CacheEntry, now: datetime) -> bool:
        return now - entry.inserted_at >= timedelta(seconds=self.ttl_seconds)
