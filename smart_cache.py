"""
Page Preview - Smart Result Cache
Activity-aware cache of assembled previews in front of the capture pipeline.

Expiry is gated on the tool's own activity: while the tool has been used
within the inactivity window nothing expires, whatever the entry's age.
Once the tool is inactive past the window, entries are expired.

Public methods never raise on store failures. Structural damage rebuilds
the store and retries once; a busy or unreachable store leaves the data in
place. Either way a default is returned and a warning recorded on failure.
"""

import asyncio
import logging
import math
import time
from typing import Any, Callable, List, Optional

from capture_models import AssembledResult, CacheEntry, CacheSettings, PreviewMetadata
from preview_store import PreviewStore
from utils.error_handler import StoreCorruptionError, StoreUnavailableError

logger = logging.getLogger(__name__)


class SmartResultCache:
    """
    Keyed persistent store of assembled results with activity-aware expiry
    and storage-budget eviction.
    """

    def __init__(
        self,
        store: PreviewStore,
        activity_tracker=None,
        settings: Optional[CacheSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: PreviewStore holding the entries
            activity_tracker: ActivityTracker; without one, entries expire by their own age
            settings: Cache limits and thresholds
            clock: Wall-clock source (epoch seconds)
        """
        self.store = store
        self.activity_tracker = activity_tracker
        self.settings = settings or CacheSettings()
        self._clock = clock

        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

        # Metrics
        self.hits = 0
        self.misses = 0
        self.expired = 0
        self.evicted = 0
        self.rebuilds = 0
        self.warnings: List[str] = []

        logger.info(
            f"[SmartCache] Initialized (max {self.settings.max_entries} entries, "
            f"window {self.settings.inactivity_window_seconds:.0f}s)"
        )

    # =========================================================================
    # Expiry
    # =========================================================================

    def is_expired(self, entry: CacheEntry) -> bool:
        """Whether an entry is past its activity-derived expiry"""
        window = self.settings.inactivity_window_seconds
        now = self._clock()

        if self.activity_tracker is None:
            return now - (entry.metadata.timestamp or 0) > window

        if self.activity_tracker.is_active():
            return False

        return now > self.activity_tracker.last_activity + window

    # =========================================================================
    # Public API
    # =========================================================================

    async def get(self, subject_id: str) -> Optional[CacheEntry]:
        """Return the entry for a subject, or None if absent, invalid or expired"""

        def op():
            entry = self.store.get(subject_id)
            if entry is None:
                return None
            if not entry.image_data:
                logger.warning(f"[SmartCache] Entry for {subject_id} has no image data")
                return None
            if self.is_expired(entry):
                logger.info(f"[SmartCache] Preview for {subject_id} expired due to inactivity")
                self.store.delete(subject_id)
                self.expired += 1
                return None
            return entry

        entry = await self._safe_operation(op, "get", None)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    async def put(self, subject_id: str, result: AssembledResult,
                  metadata: Optional[PreviewMetadata] = None) -> bool:
        """Store a result (last write wins) and enforce the entry budget"""
        meta = (metadata or PreviewMetadata()).model_copy(update={"timestamp": self._clock()})
        entry = CacheEntry(subject_id=subject_id, image_data=result.image_data, metadata=meta)

        def op():
            self.store.put(entry)
            return True

        stored = await self._safe_operation(op, "put", False)
        if stored:
            logger.debug(f"[SmartCache] Stored preview for {subject_id} ({len(result.image_data)} bytes)")
            await self.enforce_quota()
        return stored

    async def remove(self, subject_id: str) -> bool:
        return await self._safe_operation(lambda: self.store.delete(subject_id), "remove", False)

    async def clear_all(self) -> int:
        removed = await self._safe_operation(self.store.clear, "clear_all", 0)
        logger.info(f"[SmartCache] Cleared {removed} previews")
        return removed

    async def get_all(self) -> List[CacheEntry]:
        """All non-expired entries, oldest first"""

        def op():
            return [entry for entry in self.store.get_all() if not self.is_expired(entry)]

        return await self._safe_operation(op, "get_all", [])

    async def list_metadata(self) -> List[dict]:
        return await self._safe_operation(self.store.list_metadata, "list_metadata", [])

    async def sweep_expired(self) -> int:
        """Delete expired entries; a no-op while the tool is active"""
        if self.activity_tracker is not None and self.activity_tracker.is_active():
            return 0

        def op():
            now = self._clock()
            if self.activity_tracker is None:
                cutoff = now - self.settings.inactivity_window_seconds
            elif now > self.activity_tracker.last_activity + self.settings.inactivity_window_seconds:
                cutoff = now
            else:
                return 0
            return self.store.delete_many(self.store.ids_before(cutoff))

        removed = await self._safe_operation(op, "sweep_expired", 0)
        if removed:
            self.expired += removed
            logger.info(f"[SmartCache] Cleaned {removed} expired previews due to inactivity")
        return removed

    async def enforce_quota(self) -> int:
        """
        Evict oldest entries to respect the entry and storage budgets.

        Target is max_entries, or max_entries * critical_target_ratio when
        storage usage is critical.
        """

        def op():
            count = self.store.count()
            usage_ratio = self.store.size_bytes() / self.settings.quota_bytes
            target = self.settings.max_entries
            if usage_ratio >= self.settings.critical_ratio:
                target = math.floor(self.settings.max_entries * self.settings.critical_target_ratio)

            excess = count - target
            if excess <= 0:
                return 0
            return self.store.delete_many(self.store.oldest(excess))

        removed = await self._safe_operation(op, "enforce_quota", 0)
        if removed:
            self.evicted += removed
            logger.info(f"[SmartCache] Removed {removed} oldest previews due to size limit")
        return removed

    async def storage_estimate(self) -> dict:
        def op():
            usage = self.store.size_bytes()
            return {
                "usage": usage,
                "quota": self.settings.quota_bytes,
                "usage_ratio": usage / self.settings.quota_bytes,
                "entries": self.store.count(),
            }

        return await self._safe_operation(
            op, "storage_estimate", {"usage": 0, "quota": self.settings.quota_bytes, "usage_ratio": 0.0, "entries": 0}
        )

    # =========================================================================
    # Cleanup scheduling
    # =========================================================================

    async def startup_cleanup(self):
        """Sweep if the tool has been idle, trim if storage is high"""
        if self.activity_tracker is None or not self.activity_tracker.is_active():
            logger.info("[SmartCache] Performing startup cleanup due to inactivity")
            await self.sweep_expired()
        else:
            logger.info("[SmartCache] No startup cleanup needed, tool recently active")

        estimate = await self.storage_estimate()
        if estimate["usage_ratio"] > self.settings.warning_ratio:
            logger.info("[SmartCache] Performing startup cleanup due to high storage usage")
            await self.enforce_quota()

    async def periodic_cleanup(self):
        inactive = self.activity_tracker is not None and not self.activity_tracker.is_active()
        estimate = await self.storage_estimate()
        storage_high = estimate["usage_ratio"] > self.settings.warning_ratio

        if inactive:
            await self.sweep_expired()
        if storage_high:
            await self.enforce_quota()

    async def start(self):
        if self._running:
            logger.warning("[SmartCache] Already running")
            return
        self._running = True
        await self.startup_cleanup()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"[SmartCache] Periodic cleanup every {self.settings.sweep_interval_seconds:.0f}s")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        logger.info("[SmartCache] Stopped")

    async def _cleanup_loop(self):
        while self._running:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            await self.periodic_cleanup()

    # =========================================================================
    # Recovery
    # =========================================================================

    async def _safe_operation(self, op: Callable[[], Any], name: str, default: Any) -> Any:
        """
        Run a store operation off the loop; on corruption rebuild and retry once.

        Locks and I/O errors are transient and never trigger a rebuild.
        """
        try:
            return await asyncio.to_thread(op)
        except StoreUnavailableError as e:
            logger.warning(f"[SmartCache] Store unavailable during {name}: {e}")
            self._record_warning(f"{name}: {e}")
            return default
        except StoreCorruptionError as e:
            logger.warning(f"[SmartCache] Store error during {name}: {e}. Rebuilding store")
            self._record_warning(f"{name}: {e}")

        try:
            await asyncio.to_thread(self.store.rebuild)
            self.rebuilds += 1
            return await asyncio.to_thread(op)
        except (StoreCorruptionError, StoreUnavailableError, OSError) as e:
            logger.error(f"[SmartCache] {name} failed after rebuild: {e}")
            self._record_warning(f"{name} failed after rebuild: {e}")
            return default

    def _record_warning(self, message: str):
        self.warnings.append(message)
        del self.warnings[:-10]

    def get_metrics(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
            "expired": self.expired,
            "evicted": self.evicted,
            "rebuilds": self.rebuilds,
            "warnings": list(self.warnings),
            "max_entries": self.settings.max_entries,
        }
