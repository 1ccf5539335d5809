"""
Page Preview - Fragment Acquirer
Wraps the host's visible-region capture with the host's rate limit.
"""

import logging
import time
from collections import deque
from typing import Callable, Deque

from utils.error_handler import RateLimitedError, TransientCaptureError

logger = logging.getLogger(__name__)

MAX_CAPTURE_CALLS_PER_SECOND = 2
MIN_FRAGMENT_BYTES = 1000


class FragmentAcquirer:
    """
    Captures exactly the currently visible region of a page.

    The host allows a fixed number of capture calls per second across all
    pages; calls beyond that fail with RateLimitedError and are never
    forwarded to the page. Any other failure is a TransientCaptureError.
    """

    def __init__(
        self,
        max_calls_per_second: int = MAX_CAPTURE_CALLS_PER_SECOND,
        min_fragment_bytes: int = MIN_FRAGMENT_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls_per_second = max_calls_per_second
        self.min_fragment_bytes = min_fragment_bytes
        self._clock = clock
        self._recent_calls: Deque[float] = deque()

        # Stats
        self.captures = 0
        self.rate_limited = 0
        self.failures = 0

    def _check_rate(self):
        now = self._clock()
        while self._recent_calls and now - self._recent_calls[0] >= 1.0:
            self._recent_calls.popleft()
        if len(self._recent_calls) >= self.max_calls_per_second:
            self.rate_limited += 1
            raise RateLimitedError()
        self._recent_calls.append(now)

    async def capture_visible_region(self, driver) -> bytes:
        """
        Capture the visible viewport of a page.

        Args:
            driver: PageDriver of the subject page

        Returns:
            Encoded PNG bytes

        Raises:
            RateLimitedError: Host capture rate exceeded
            TransientCaptureError: Capture failed or produced an unusable image
        """
        self._check_rate()

        try:
            data = await driver.capture_visible_region()
        except Exception as e:
            self.failures += 1
            logger.warning(f"[FragmentAcquirer] Capture failed: {e}")
            raise TransientCaptureError(f"Capture failed: {e}") from e

        if not data or len(data) < self.min_fragment_bytes:
            self.failures += 1
            size = len(data) if data else 0
            logger.warning(f"[FragmentAcquirer] Captured image too small ({size} bytes)")
            raise TransientCaptureError(f"Captured image is too small ({size} bytes)")

        self.captures += 1
        return data

    def get_stats(self) -> dict:
        return {
            "captures": self.captures,
            "rate_limited": self.rate_limited,
            "failures": self.failures,
            "max_calls_per_second": self.max_calls_per_second,
        }
