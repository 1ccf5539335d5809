"""
Page Preview - Activity Tracker
Tracks when the tool itself was last used, persisted across restarts.

Activity means interaction with this service's own API, never with the
captured pages. The smart cache only expires entries once the tool has been
inactive for longer than the inactivity window.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

INACTIVITY_WINDOW_SECONDS = 30 * 60
PERSIST_INTERVAL_SECONDS = 60


class ActivityTracker:
    """Process-wide record of the last user interaction"""

    def __init__(
        self,
        state_file: str = "data/activity_state.json",
        inactivity_window: float = INACTIVITY_WINDOW_SECONDS,
        persist_interval: float = PERSIST_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            state_file: JSON file holding the last activity timestamp
            inactivity_window: Seconds without activity before the tool is inactive
            persist_interval: Seconds between background saves
            clock: Wall-clock source (epoch seconds)
        """
        self.state_file = Path(state_file)
        self.inactivity_window = inactivity_window
        self.persist_interval = persist_interval
        self._clock = clock

        self.last_activity: float = clock()
        self._loaded = False
        self._dirty = False
        self._persist_task: Optional[asyncio.Task] = None

    def load(self) -> float:
        """Restore the last activity timestamp from disk (keeps the current one if missing)"""
        self._loaded = True
        if not self.state_file.exists():
            return self.last_activity

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
            self.last_activity = float(data["last_activity"])
            logger.info(f"[ActivityTracker] Loaded last activity ({self.inactivity_duration():.0f}s ago)")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[ActivityTracker] Failed to load activity state: {e}")
        return self.last_activity

    def save(self):
        """Persist the last activity timestamp"""
        self._dirty = False
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, 'w') as f:
                json.dump({"last_activity": self.last_activity}, f)
        except OSError as e:
            self._dirty = True
            logger.error(f"[ActivityTracker] Failed to save activity state: {e}")

    def update_activity(self):
        """Record an interaction now; written to disk by the persist loop or stop()"""
        self.last_activity = self._clock()
        self._dirty = True

    def inactivity_duration(self) -> float:
        """Seconds since the last interaction"""
        return max(0.0, self._clock() - self.last_activity)

    def is_active(self) -> bool:
        return self.inactivity_duration() < self.inactivity_window

    async def start(self):
        """Load persisted state (unless already loaded), mark activity, start periodic persistence"""
        if not self._loaded:
            self.load()
        self.update_activity()
        if self._persist_task is None:
            self._persist_task = asyncio.create_task(self._persist_loop())
        logger.info("[ActivityTracker] Started")

    async def stop(self):
        if self._persist_task:
            self._persist_task.cancel()
            try:
                await self._persist_task
            except asyncio.CancelledError:
                pass
            self._persist_task = None
        self.save()
        logger.info("[ActivityTracker] Stopped")

    async def _persist_loop(self):
        while True:
            await asyncio.sleep(self.persist_interval)
            if self._dirty:
                await asyncio.to_thread(self.save)

    def get_status(self) -> dict:
        return {
            "last_activity": self.last_activity,
            "inactivity_seconds": round(self.inactivity_duration(), 1),
            "is_active": self.is_active(),
            "inactivity_window_seconds": self.inactivity_window,
        }
