"""
Shared pytest fixtures: an in-memory page, a recording sleep, scripted
acquirers and a fake activity tracker.
"""

import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from capture_models import PageDimensions
from fragment_acquirer import FragmentAcquirer
from page_driver import PageDriver
from utils.error_handler import RateLimitedError


def page_pixels(x0, y0, width, height):
    """
    Deterministic page content as a function of absolute page coordinates.

    R = y % 256, B = (y // 256) % 256 locate a row; G is hash noise so PNGs
    do not compress below the acquirer's minimum size.
    """
    ys = np.arange(y0, y0 + height, dtype=np.int64)[:, None]
    xs = np.arange(x0, x0 + width, dtype=np.int64)[None, :]
    ys, xs = np.broadcast_arrays(ys, xs)
    r = ys % 256
    g = ((xs * 73856093) ^ (ys * 19349663)) & 0xFF
    b = (ys // 256) % 256
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


class FakePage(PageDriver):
    """In-memory page with scroll state, fixed elements and growth"""

    def __init__(
        self,
        full_width=1000,
        full_height=5000,
        viewport_width=1000,
        viewport_height=1000,
        url="https://example.com/article",
        grow_to=None,
        grow_after=None,
        scroll_offset_rows=None,
        fixed_elements=2,
        hang_capture=False,
    ):
        self._url = url
        self.width = full_width
        self.height = full_height
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.grow_to = grow_to
        self.grow_after = grow_after
        # {requested_y: pixels the page falls short by}
        self.scroll_offset_rows = scroll_offset_rows or {}
        self.fixed_elements = fixed_elements
        self.hang_capture = hang_capture

        self.scroll_x = 0
        self.scroll_y = 0
        self.captures = 0
        self.overflow_hidden = False
        self.fixed_tagged = False
        self.hide_fixed_calls = 0
        self.restore_calls = 0
        self.scroll_history = []

    @property
    def url(self):
        return self._url

    async def title(self):
        return "Fake Page"

    async def measure(self):
        return PageDimensions(self.width, self.height, self.viewport_width, self.viewport_height)

    async def document_height(self):
        return self.height

    async def max_scroll(self):
        return max(0, self.width - self.viewport_width), max(0, self.height - self.viewport_height)

    async def scroll_position(self):
        return self.scroll_x, self.scroll_y

    def _clamp(self, x, y):
        max_x, max_y = max(0, self.width - self.viewport_width), max(0, self.height - self.viewport_height)
        return max(0, min(x, max_x)), max(0, min(y, max_y))

    async def scroll_to(self, x, y, smooth_options=False):
        x, y = self._clamp(x, y)
        y -= self.scroll_offset_rows.get(y, 0)
        self.scroll_x, self.scroll_y = x, max(0, y)
        self.scroll_history.append((x, y))

    async def scroll_by(self, dx, dy):
        target_y = self.scroll_y + dy
        x, y = self._clamp(self.scroll_x + dx, target_y)
        y -= self.scroll_offset_rows.get(y, 0)
        self.scroll_x, self.scroll_y = x, max(0, y)

    async def save_state(self):
        return {"scrollX": self.scroll_x, "scrollY": self.scroll_y, "htmlOverflow": ""}

    async def hide_overflow(self):
        self.overflow_hidden = True

    async def restore_state(self, state):
        self.restore_calls += 1
        self.overflow_hidden = False
        self.scroll_x, self.scroll_y = state["scrollX"], state["scrollY"]

    async def tag_fixed_elements(self):
        self.fixed_tagged = True
        return self.fixed_elements

    async def hide_fixed_outside_viewport(self):
        self.hide_fixed_calls += 1
        return 0

    async def restore_fixed_elements(self):
        self.fixed_tagged = False

    async def capture_visible_region(self):
        if self.hang_capture:
            await asyncio.sleep(30)
        self.captures += 1
        if self.grow_after is not None and self.captures >= self.grow_after:
            self.height = self.grow_to
        pixels = page_pixels(self.scroll_x, self.scroll_y, self.viewport_width, self.viewport_height)
        buffer = io.BytesIO()
        Image.fromarray(pixels, "RGB").save(buffer, format="PNG")
        return buffer.getvalue()


class RecordingSleep:
    """Sleep replacement that records requested delays and only yields"""

    def __init__(self, on_sleep=None):
        self.calls = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.on_sleep:
            self.on_sleep(seconds)
        await asyncio.sleep(0)


class ScriptedAcquirer(FragmentAcquirer):
    """Acquirer whose n-th call (1-based) raises the scripted error"""

    def __init__(self, script=None):
        super().__init__(max_calls_per_second=100000)
        self.script = dict(script or {})
        self.calls = 0

    async def capture_visible_region(self, driver):
        self.calls += 1
        error = self.script.get(self.calls)
        if error is not None:
            if isinstance(error, RateLimitedError):
                self.rate_limited += 1
            else:
                self.failures += 1
            raise error
        return await super().capture_visible_region(driver)


class FakeTracker:
    """Activity tracker stand-in with settable state"""

    def __init__(self, active=True, last_activity=0.0, window=1800):
        self.active = active
        self.last_activity = last_activity
        self.inactivity_window = window
        self.updates = 0

    def is_active(self):
        return self.active

    def update_activity(self):
        self.updates += 1

    def get_status(self):
        return {"is_active": self.active, "last_activity": self.last_activity}


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker():
    return FakeTracker()
