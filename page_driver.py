"""
Page Preview - Page Driver
Host tab/viewport control over a Playwright page.

The page agent talks to the page only through PageDriver, so tests can
substitute an in-memory page.
"""

import logging
from typing import Dict, Tuple

from playwright.async_api import Error as PlaywrightError, async_playwright

from capture_models import PageDimensions
from utils.error_handler import CaptureFailedError

logger = logging.getLogger(__name__)

FIXED_ATTR = "data-preview-fixed"

_MEASURE_JS = """
() => {
    const body = document.body;
    const html = document.documentElement;
    const pick = (nums) => Math.max(0, ...nums.filter(x => x));
    return {
        fullWidth: pick([
            html.clientWidth, body ? body.scrollWidth : 0, html.scrollWidth,
            body ? body.offsetWidth : 0, html.offsetWidth
        ]),
        fullHeight: pick([
            html.clientHeight, body ? body.scrollHeight : 0, html.scrollHeight,
            body ? body.offsetHeight : 0, html.offsetHeight
        ]),
        viewportWidth: window.innerWidth,
        viewportHeight: window.innerHeight
    };
}
"""

_DOCUMENT_HEIGHT_JS = """
() => Math.max(
    document.documentElement.scrollHeight,
    document.body ? document.body.scrollHeight : 0
)
"""

_MAX_SCROLL_JS = """
() => ({
    x: Math.max(0, document.documentElement.scrollWidth - window.innerWidth),
    y: Math.max(0, document.documentElement.scrollHeight - window.innerHeight)
})
"""

_SCROLL_POSITION_JS = "() => ({x: window.scrollX, y: window.scrollY})"

_SAVE_STATE_JS = """
() => {
    const body = document.body;
    const state = {
        scrollX: window.scrollX,
        scrollY: window.scrollY,
        htmlOverflow: document.documentElement.style.overflow,
        bodyOverflowY: body ? body.style.overflowY : ''
    };
    if (body) {
        body.style.overflowY = 'visible';
    }
    return state;
}
"""

_HIDE_OVERFLOW_JS = "() => { document.documentElement.style.overflow = 'hidden'; }"

_RESTORE_STATE_JS = """
(state) => {
    const body = document.body;
    document.documentElement.style.overflow = state.htmlOverflow;
    if (body) {
        body.style.overflowY = state.bodyOverflowY || 'auto';
        body.style.height = '';
    }
    document.documentElement.style.height = '';
    window.scrollTo(state.scrollX, state.scrollY);
    if (body) {
        body.getBoundingClientRect();
    }
}
"""

_TAG_FIXED_JS = """
(attr) => {
    let count = 0;
    for (const el of document.querySelectorAll('body *')) {
        const position = window.getComputedStyle(el).position;
        if (position === 'fixed' || position === 'sticky') {
            el.setAttribute(attr, JSON.stringify({
                position: el.style.position || '',
                visibility: el.style.visibility || '',
                display: el.style.display || ''
            }));
            count++;
        }
    }
    return count;
}
"""

_UPDATE_FIXED_JS = """
(attr) => {
    const vw = window.innerWidth;
    const vh = window.innerHeight;
    let hidden = 0;
    for (const el of document.querySelectorAll('[' + attr + ']')) {
        const rect = el.getBoundingClientRect();
        if (rect.bottom < 0 || rect.top > vh || rect.right < 0 || rect.left > vw) {
            el.style.visibility = 'hidden';
            hidden++;
        } else {
            el.style.visibility = '';
        }
    }
    return hidden;
}
"""

_RESTORE_FIXED_JS = """
(attr) => {
    for (const el of document.querySelectorAll('[' + attr + ']')) {
        const original = JSON.parse(el.getAttribute(attr));
        el.style.position = original.position;
        el.style.visibility = original.visibility;
        el.style.display = original.display;
        el.removeAttribute(attr);
    }
}
"""


class PageDriver:
    """
    Viewport control and visible-region capture for one subject page.

    All methods are coroutines; implementations must not block the loop.
    """

    @property
    def url(self) -> str:
        raise NotImplementedError

    async def title(self) -> str:
        raise NotImplementedError

    async def measure(self) -> PageDimensions:
        raise NotImplementedError

    async def document_height(self) -> int:
        raise NotImplementedError

    async def max_scroll(self) -> Tuple[int, int]:
        raise NotImplementedError

    async def scroll_position(self) -> Tuple[int, int]:
        raise NotImplementedError

    async def scroll_to(self, x: int, y: int, smooth_options: bool = False) -> None:
        raise NotImplementedError

    async def scroll_by(self, dx: int, dy: int) -> None:
        raise NotImplementedError

    async def save_state(self) -> Dict:
        raise NotImplementedError

    async def hide_overflow(self) -> None:
        raise NotImplementedError

    async def restore_state(self, state: Dict) -> None:
        raise NotImplementedError

    async def tag_fixed_elements(self) -> int:
        raise NotImplementedError

    async def hide_fixed_outside_viewport(self) -> int:
        raise NotImplementedError

    async def restore_fixed_elements(self) -> None:
        raise NotImplementedError

    async def capture_visible_region(self) -> bytes:
        raise NotImplementedError


class PlaywrightPageDriver(PageDriver):
    """PageDriver over a playwright.async_api.Page"""

    def __init__(self, page):
        """
        Args:
            page: Playwright async Page, already navigated to the subject
        """
        self.page = page

    @property
    def url(self) -> str:
        return self.page.url

    async def title(self) -> str:
        return await self.page.title()

    async def measure(self) -> PageDimensions:
        info = await self.page.evaluate(_MEASURE_JS)
        return PageDimensions(
            full_width=int(info["fullWidth"]),
            full_height=int(info["fullHeight"]),
            viewport_width=int(info["viewportWidth"]),
            viewport_height=int(info["viewportHeight"]),
        )

    async def document_height(self) -> int:
        return int(await self.page.evaluate(_DOCUMENT_HEIGHT_JS))

    async def max_scroll(self) -> Tuple[int, int]:
        result = await self.page.evaluate(_MAX_SCROLL_JS)
        return int(result["x"]), int(result["y"])

    async def scroll_position(self) -> Tuple[int, int]:
        result = await self.page.evaluate(_SCROLL_POSITION_JS)
        return round(result["x"]), round(result["y"])

    async def scroll_to(self, x: int, y: int, smooth_options: bool = False) -> None:
        if smooth_options:
            await self.page.evaluate(
                "([x, y]) => window.scrollTo({left: x, top: y, behavior: 'auto'})", [x, y]
            )
        else:
            await self.page.evaluate("([x, y]) => window.scrollTo(x, y)", [x, y])

    async def scroll_by(self, dx: int, dy: int) -> None:
        await self.page.evaluate("([dx, dy]) => window.scrollBy(dx, dy)", [dx, dy])

    async def save_state(self) -> Dict:
        return await self.page.evaluate(_SAVE_STATE_JS)

    async def hide_overflow(self) -> None:
        await self.page.evaluate(_HIDE_OVERFLOW_JS)

    async def restore_state(self, state: Dict) -> None:
        await self.page.evaluate(_RESTORE_STATE_JS, state)

    async def tag_fixed_elements(self) -> int:
        return int(await self.page.evaluate(_TAG_FIXED_JS, FIXED_ATTR))

    async def hide_fixed_outside_viewport(self) -> int:
        return int(await self.page.evaluate(_UPDATE_FIXED_JS, FIXED_ATTR))

    async def restore_fixed_elements(self) -> None:
        await self.page.evaluate(_RESTORE_FIXED_JS, FIXED_ATTR)

    async def capture_visible_region(self) -> bytes:
        # Viewport only; the page is never resized for capture
        return await self.page.screenshot(type="png", full_page=False)


class BrowserSession:
    """
    Owns a Playwright browser and hands out one driver per subject page.
    """

    def __init__(self, viewport_width: int = 1280, viewport_height: int = 800, headless: bool = True):
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.headless = headless
        self._playwright = None
        self._browser = None

        logger.info(f"[BrowserSession] Initialized ({viewport_width}x{viewport_height}, headless={headless})")

    @property
    def running(self) -> bool:
        return self._browser is not None

    async def start(self):
        """Launch the browser"""
        if self._browser:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        logger.info("[BrowserSession] Browser launched")

    async def stop(self):
        """Close the browser"""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("[BrowserSession] Browser closed")

    async def open(self, url: str, timeout_ms: int = 30000) -> PlaywrightPageDriver:
        """
        Open a subject page and return a driver for it.

        Args:
            url: Page to load
            timeout_ms: Navigation timeout

        Returns:
            PlaywrightPageDriver bound to the new page

        Raises:
            CaptureFailedError: The page could not be loaded
        """
        await self.start()
        page = await self._browser.new_page(
            viewport={"width": self.viewport_width, "height": self.viewport_height}
        )
        try:
            await page.goto(url, wait_until="load", timeout=timeout_ms)
        except PlaywrightError as e:
            await page.close()
            logger.error(f"[BrowserSession] Failed to load {url}: {e}")
            raise CaptureFailedError(f"Failed to load {url}: {e}") from e
        logger.debug(f"[BrowserSession] Opened {url}")
        return PlaywrightPageDriver(page)

    async def close(self, driver: PlaywrightPageDriver):
        """Close a page previously returned by open()"""
        await driver.page.close()
