"""
Page Preview - Batch Loader
"Load all": captures many subjects one at a time with adaptive pacing.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, List, Optional

from capture_heuristics import inter_capture_delay_ms, is_capturable_url
from utils.error_handler import PreviewError

logger = logging.getLogger(__name__)

SKIP_UNCAPTURABLE_DELAY_MS = 200
SKIP_CACHED_DELAY_MS = 300
AFTER_SUCCESS_DELAY_MS = 2000
AFTER_FAILURE_DELAY_MS = 1000
BATCH_MAX_POSITIONS = 1000


@dataclass
class BatchResult:
    """Outcome of one load-all batch"""
    total: int = 0
    processed: int = 0
    captured: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: dict = field(default_factory=dict)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "captured": self.captured,
            "cached": self.cached,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


class BatchLoader:
    """
    Serializes captures of many subjects.

    Cancellation is cooperative: it is checked before each subject and never
    interrupts a capture that has already started.
    """

    def __init__(self, orchestrator, sleep=asyncio.sleep, rand: Callable[[], float] = random.random):
        """
        Args:
            orchestrator: CaptureOrchestrator performing each capture
            sleep: Awaitable sleep(seconds)
            rand: Jitter source in [0, 1)
        """
        self.orchestrator = orchestrator
        self._sleep = sleep
        self._rand = rand
        self._cancel_requested = False
        self._running = False
        self.current: Optional[BatchResult] = None

    @property
    def running(self) -> bool:
        return self._running

    def cancel(self):
        """Request cancellation; takes effect before the next subject"""
        if self._running:
            logger.info("[BatchLoader] Cancellation requested")
            self._cancel_requested = True

    async def _wait_ms(self, delay_ms: float):
        await self._sleep(delay_ms / 1000.0)

    async def load_all(
        self,
        subjects: list,
        overrides: Optional[dict] = None,
        open_driver: Optional[Callable[[str], Awaitable]] = None,
        close_driver: Optional[Callable[[object], Awaitable]] = None,
    ) -> BatchResult:
        """
        Capture every subject that is not already cached.

        Args:
            subjects: CaptureSubject list, processed in order
            overrides: CaptureSettings overrides applied to every capture
            open_driver: Opens a page for a subject without a driver; only
                called once the subject is known to need a capture
            close_driver: Closes pages opened through open_driver
        """
        if self._running:
            raise RuntimeError("Load all already running")

        self._running = True
        self._cancel_requested = False
        result = BatchResult(total=len(subjects))
        self.current = result
        run_overrides = {"max_positions": BATCH_MAX_POSITIONS}
        run_overrides.update(overrides or {})

        logger.info(f"[BatchLoader] Loading {len(subjects)} previews")

        try:
            for subject in subjects:
                if self._cancel_requested:
                    result.cancelled = True
                    logger.info("[BatchLoader] Load all cancelled")
                    break

                result.processed += 1
                subject_id = subject.subject_id
                logger.info(
                    f"[BatchLoader] Processing {subject_id} ({result.processed}/{result.total})"
                )

                if not is_capturable_url(subject.url):
                    logger.info(f"[BatchLoader] Skipping non-capturable page: {subject.url or 'unknown URL'}")
                    result.skipped.append(subject_id)
                    await self._wait_ms(SKIP_UNCAPTURABLE_DELAY_MS)
                    continue

                if await self.orchestrator.cache.get(subject_id) is not None:
                    result.cached.append(subject_id)
                    await self._wait_ms(SKIP_CACHED_DELAY_MS)
                    continue

                delay = inter_capture_delay_ms(result.processed, subject.url, self._rand)
                logger.debug(f"[BatchLoader] Waiting {delay / 1000:.1f}s before capturing {subject_id}")
                await self._wait_ms(delay)

                opened = None
                try:
                    if subject.driver is None and open_driver is not None:
                        opened = await open_driver(subject.url)
                        subject = replace(subject, driver=opened)
                    await self.orchestrator.capture(subject, run_overrides)
                    result.captured.append(subject_id)
                    await self._wait_ms(AFTER_SUCCESS_DELAY_MS)
                except PreviewError as e:
                    logger.error(f"[BatchLoader] Failed to capture {subject_id}: {e}")
                    result.failed[subject_id] = e.message
                    await self._wait_ms(AFTER_FAILURE_DELAY_MS)
                finally:
                    if opened is not None and close_driver is not None:
                        await close_driver(opened)
        finally:
            self._running = False
            self._cancel_requested = False

        logger.info(
            f"[BatchLoader] Done: {len(result.captured)} captured, {len(result.cached)} cached, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed"
        )
        return result
