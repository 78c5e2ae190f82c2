"""Content-addressed analysis cache with perceptual near-duplicate lookup."""

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from .events import EventBus, Events
from .hashing import PerceptualFingerprint
from .stream_parser import Analysis
from .timing import Clock, SystemClock

SNAPSHOT_VERSION = 1


@dataclass
class CacheEntry:
    """Cached analysis for one optimized frame."""
    content_hash: str
    fingerprint: PerceptualFingerprint
    analysis: Analysis
    created_at: float
    last_accessed_at: float
    access_count: int = 0
    cost: float = 0.0


@dataclass
class CacheStats:
    """Running cache counters."""
    hits: int = 0
    misses: int = 0
    cost_saved: float = 0.0
    evictions: int = 0
    expired: int = 0
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "cost_saved": self.cost_saved,
            "evictions": self.evictions,
            "expired": self.expired,
            "size": self.size,
        }


class FrameCache:
    """LRU + TTL cache keyed by content hash, indexed by perceptual fingerprint.

    Every stored entry's fingerprint is present in the index; an index bucket
    is deleted as soon as its last content hash is removed.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        similarity_threshold: int = 5,
        ttl_sec: float = 3600.0,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        """Initialize frame cache.

        Args:
            max_entries: Capacity before eviction on insert
            similarity_threshold: Max Hamming distance for a near-duplicate hit
            ttl_sec: Age after which an entry is expired
            clock: Time source (injected in tests)
            events: Bus for cache-hit/cache-evicted notifications
        """
        self.max_entries = max_entries
        self.similarity_threshold = similarity_threshold
        self.ttl_sec = ttl_sec
        self.clock = clock or SystemClock()
        self.events = events

        self._entries: Dict[str, CacheEntry] = {}
        self._index: Dict[PerceptualFingerprint, Set[str]] = {}
        self._stats = CacheStats()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, content_hash: str) -> bool:
        with self._lock:
            return content_hash in self._entries

    def lookup(self, content_hash: str, fingerprint: PerceptualFingerprint) -> Optional[CacheEntry]:
        """Find an exact or near-duplicate entry.

        Among near-duplicates within the similarity threshold the most recently
        accessed entry wins; equal access times fall back to the smaller distance.

        Returns:
            The hit entry (already touched) or None on miss
        """
        with self._lock:
            now = self.clock.time()
            entry = self._entries.get(content_hash)
            if entry is not None and self._is_expired(entry, now):
                self._remove(content_hash, reason="expired")
                entry = None

            match_type = "exact"
            if entry is None:
                entry = self._find_similar(fingerprint, now)
                match_type = "similar"

            if entry is None:
                self._stats.misses += 1
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._stats.hits += 1
            self._stats.cost_saved += entry.cost

        logger.debug(f"Cache {match_type} hit {entry.content_hash[:12]} (count={entry.access_count})")
        self._emit(Events.CACHE_HIT, {
            "content_hash": entry.content_hash,
            "match": match_type,
            "access_count": entry.access_count,
            "cost_saved": entry.cost,
        })
        return entry

    def _find_similar(self, fingerprint: PerceptualFingerprint, now: float) -> Optional[CacheEntry]:
        best: Optional[CacheEntry] = None
        best_distance = 0
        expired: List[str] = []

        for indexed_fp, hashes in self._index.items():
            distance = fingerprint.distance(indexed_fp)
            if distance > self.similarity_threshold:
                continue
            for content_hash in hashes:
                candidate = self._entries[content_hash]
                if self._is_expired(candidate, now):
                    expired.append(content_hash)
                    continue
                if (best is None
                        or candidate.last_accessed_at > best.last_accessed_at
                        or (candidate.last_accessed_at == best.last_accessed_at and distance < best_distance)):
                    best = candidate
                    best_distance = distance

        for content_hash in expired:
            self._remove(content_hash, reason="expired")
        return best

    def store(self, content_hash: str, fingerprint: PerceptualFingerprint,
              analysis: Analysis, cost: float) -> CacheEntry:
        """Insert an analysis, evicting first when at capacity.

        Args:
            content_hash: SHA-256 hex digest of the optimized frame bytes
            fingerprint: Perceptual fingerprint of the frame
            analysis: Finalized analysis
            cost: Cost of the original analysis

        Returns:
            The stored entry
        """
        with self._lock:
            now = self.clock.time()
            if content_hash in self._entries:
                self._remove(content_hash, reason="replaced")
            elif len(self._entries) >= self.max_entries:
                if self.prune_expired() == 0:
                    self._evict_lru()

            entry = CacheEntry(
                content_hash=content_hash,
                fingerprint=fingerprint,
                analysis=analysis,
                created_at=now,
                last_accessed_at=now,
                cost=cost,
            )
            self._insert(entry)

        logger.debug(f"Cached analysis {content_hash[:12]} (size={len(self)})")
        self._emit(Events.CACHE_STORED, {"content_hash": content_hash, "size": len(self)})
        return entry

    def _insert(self, entry: CacheEntry) -> None:
        # Drop any previous entry so its fingerprint bucket goes with it
        self._remove(entry.content_hash, reason="replaced")
        self._entries[entry.content_hash] = entry
        self._index.setdefault(entry.fingerprint, set()).add(entry.content_hash)

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        # min() keeps the earliest inserted entry on equal access times
        victim = min(self._entries.values(), key=lambda e: e.last_accessed_at)
        self._remove(victim.content_hash, reason="lru")

    def _remove(self, content_hash: str, reason: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(content_hash, None)
        if entry is None:
            return None

        bucket = self._index.get(entry.fingerprint)
        if bucket is not None:
            bucket.discard(content_hash)
            if not bucket:
                del self._index[entry.fingerprint]

        if reason == "lru":
            self._stats.evictions += 1
        elif reason == "expired":
            self._stats.expired += 1

        if reason != "replaced":
            self._emit(Events.CACHE_EVICTED, {"content_hash": content_hash, "reason": reason})
        return entry

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_sec

    def prune_expired(self) -> int:
        """Remove every entry older than the TTL.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self.clock.time()
            stale = [h for h, e in self._entries.items() if self._is_expired(e, now)]
            for content_hash in stale:
                self._remove(content_hash, reason="expired")

        if stale:
            logger.info(f"Pruned {len(stale)} expired cache entries")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._index.clear()
        logger.info("Cache cleared")

    def stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._entries)
            return CacheStats(**self._stats.to_dict())

    def hit_rate(self) -> float:
        """Percentage of lookups served from the cache."""
        with self._lock:
            total = self._stats.hits + self._stats.misses
            return (self._stats.hits / total) * 100.0 if total else 0.0

    def index_size(self) -> int:
        with self._lock:
            return len(self._index)

    def check_integrity(self) -> bool:
        """True when entry map and fingerprint index reference each other exactly."""
        with self._lock:
            indexed = set()
            for fp, hashes in self._index.items():
                if not hashes:
                    return False
                for content_hash in hashes:
                    entry = self._entries.get(content_hash)
                    if entry is None or entry.fingerprint != fp:
                        return False
                    indexed.add(content_hash)
            return indexed == set(self._entries)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_snapshot(self) -> Dict[str, Any]:
        """Serialize entries and counters to a JSON-compatible dict."""
        with self._lock:
            entries = [
                {
                    "content_hash": e.content_hash,
                    "fingerprint": e.fingerprint.to_hex(),
                    "fingerprint_bits": e.fingerprint.size,
                    "analysis": e.analysis.model_dump(),
                    "created_at": e.created_at,
                    "last_accessed_at": e.last_accessed_at,
                    "access_count": e.access_count,
                    "cost": e.cost,
                }
                for e in self._entries.values()
            ]
            return {
                "version": SNAPSHOT_VERSION,
                "entries": entries,
                "stats": self._stats.to_dict(),
            }

    def import_snapshot(self, data: Any) -> int:
        """Replace state with a snapshot, then drop expired entries.

        Malformed snapshots are logged and leave the cache empty.

        Returns:
            Number of entries kept after pruning
        """
        with self._lock:
            self._entries.clear()
            self._index.clear()
            try:
                if isinstance(data, (str, bytes)):
                    data = json.loads(data)
                if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
                    raise ValueError("snapshot must be a mapping with an 'entries' list")

                for raw in data["entries"]:
                    entry = CacheEntry(
                        content_hash=str(raw["content_hash"]),
                        fingerprint=PerceptualFingerprint.from_hex(
                            raw["fingerprint"], int(raw.get("fingerprint_bits", 64))
                        ),
                        analysis=Analysis.model_validate(raw["analysis"]),
                        created_at=float(raw["created_at"]),
                        last_accessed_at=float(raw["last_accessed_at"]),
                        access_count=int(raw.get("access_count", 0)),
                        cost=float(raw.get("cost", 0.0)),
                    )
                    self._insert(entry)

                stats = data.get("stats") or {}
                self._stats.hits = int(stats.get("hits", 0))
                self._stats.misses = int(stats.get("misses", 0))
                self._stats.cost_saved = float(stats.get("cost_saved", 0.0))
                self._stats.evictions = int(stats.get("evictions", 0))
            except Exception as e:
                logger.error(f"Failed to import cache snapshot, starting empty: {e}")
                self._entries.clear()
                self._index.clear()
                self._stats = CacheStats()
                return 0

            self.prune_expired()
            kept = len(self._entries)

        logger.info(f"Imported {kept} cache entries")
        self._emit(Events.CACHE_IMPORTED, {"size": kept})
        return kept

    def save(self, path: Path) -> None:
        """Write the snapshot to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.export_snapshot(), f)
        logger.info(f"Saved cache snapshot to {path}")

    def load(self, path: Path) -> int:
        """Load a snapshot file if it exists."""
        path = Path(path)
        if not path.exists():
            return 0
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to read cache snapshot {path}: {e}")
            return 0
        return self.import_snapshot(text)

    def _emit(self, event: str, payload: Any) -> None:
        if self.events is not None:
            self.events.emit(event, payload)
