import asyncio

import pytest

from batch_loader import BatchLoader
from capture_models import AssembledResult, CaptureSettings
from capture_orchestrator import CaptureOrchestrator, CaptureSubject
from conftest import FakePage, FakeTracker, RecordingSleep, ScriptedAcquirer
from preview_store import PreviewStore
from smart_cache import SmartResultCache
from utils.error_handler import CaptureFailedError


@pytest.fixture
def orchestrator(tmp_path):
    store = PreviewStore(str(tmp_path / "previews.db"))
    cache = SmartResultCache(store, FakeTracker(active=True))
    yield CaptureOrchestrator(
        cache,
        acquirer=ScriptedAcquirer(),
        settings=CaptureSettings(scroll_pad=0),
        adaptive_scroll_delay=False,
        sleep=RecordingSleep(),
    )
    store.close()


class BlankPage(FakePage):
    """Page whose captures are always empty"""

    async def capture_visible_region(self):
        return b""


def test_skips_uncapturable_and_cached_subjects(orchestrator):
    sleep = RecordingSleep()
    loader = BatchLoader(orchestrator, sleep=sleep, rand=lambda: 0.0)
    asyncio.run(orchestrator.cache.put("cached", AssembledResult(b"png", 1, 1)))

    subjects = [
        CaptureSubject("settings", FakePage(url="chrome://settings")),
        CaptureSubject("cached", FakePage(full_height=2000)),
        CaptureSubject("fresh", FakePage(full_height=2000)),
    ]
    result = asyncio.run(loader.load_all(subjects))

    assert result.skipped == ["settings"]
    assert result.cached == ["cached"]
    assert result.captured == ["fresh"]
    assert result.processed == 3
    assert sleep.calls == [0.2, 0.3, pytest.approx(1.65), 2.0]
    assert not loader.running


def test_failed_capture_is_recorded_and_batch_continues(orchestrator):
    sleep = RecordingSleep()
    loader = BatchLoader(orchestrator, sleep=sleep, rand=lambda: 0.0)
    subjects = [
        CaptureSubject("blank", BlankPage(full_height=1000)),
        CaptureSubject("good", FakePage(full_height=1000)),
    ]

    result = asyncio.run(loader.load_all(subjects))

    assert "blank" in result.failed
    assert result.captured == ["good"]
    assert 1.0 in sleep.calls


def test_batch_raises_position_ceiling(orchestrator):
    seen = []
    original = orchestrator.capture

    async def spy(subject, overrides=None):
        seen.append(overrides)
        return await original(subject, overrides)

    orchestrator.capture = spy
    loader = BatchLoader(orchestrator, sleep=RecordingSleep(), rand=lambda: 0.0)
    asyncio.run(loader.load_all([CaptureSubject("a", FakePage(full_height=1000))], {"scroll_delay_ms": 10}))

    assert seen == [{"max_positions": 1000, "scroll_delay_ms": 10}]


def test_cancel_stops_before_next_subject(orchestrator):
    loader = None

    def on_sleep(seconds):
        if seconds == 2.0:
            loader.cancel()

    loader = BatchLoader(orchestrator, sleep=RecordingSleep(on_sleep), rand=lambda: 0.0)
    subjects = [CaptureSubject(f"page-{i}", FakePage(full_height=1000)) for i in range(3)]

    result = asyncio.run(loader.load_all(subjects))

    assert result.cancelled
    assert result.captured == ["page-0"]
    assert result.processed == 1
    assert not loader.running
    assert result.to_dict()["cancelled"]


def test_pages_are_opened_only_for_subjects_that_need_capture(orchestrator):
    opened, closed = [], []

    async def open_driver(url):
        if url.endswith("/broken"):
            raise CaptureFailedError(f"Navigation failed for {url}")
        page = FakePage(full_height=1000, url=url)
        opened.append(url)
        return page

    async def close_driver(page):
        closed.append(page.url)

    asyncio.run(orchestrator.cache.put("cached", AssembledResult(b"png", 1, 1)))
    loader = BatchLoader(orchestrator, sleep=RecordingSleep(), rand=lambda: 0.0)
    subjects = [
        CaptureSubject("cached", None, url="https://example.com/cached"),
        CaptureSubject("blank", None, url="about:blank"),
        CaptureSubject("broken", None, url="https://example.com/broken"),
        CaptureSubject("fresh", None, url="https://example.com/fresh"),
    ]

    result = asyncio.run(loader.load_all(subjects, open_driver=open_driver, close_driver=close_driver))

    assert opened == ["https://example.com/fresh"]
    assert closed == opened
    assert result.cached == ["cached"]
    assert result.skipped == ["blank"]
    assert "broken" in result.failed
    assert result.captured == ["fresh"]
