import asyncio
import io
import json

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import routes
import server
from activity_tracker import ActivityTracker
from capture_models import AssembledResult, CacheEntry, CaptureSettings, PreviewMetadata
from capture_orchestrator import CaptureOrchestrator
from batch_loader import BatchLoader
from conftest import FakePage, FakeTracker, RecordingSleep, ScriptedAcquirer
from image_assembler import encode_png
from preview_store import PreviewStore
from routes.previews import subject_id_for
from smart_cache import SmartResultCache
from utils.error_handler import CaptureFailedError


class FakeBrowserSession:
    """Opens FakePages instead of browser tabs"""

    def __init__(self):
        self.opened = []
        self.closed = 0
        self.running = True
        self.fail_opens = False

    async def open(self, url):
        if self.fail_opens:
            raise CaptureFailedError(f"Navigation failed for {url}")
        page = FakePage(full_height=2000, url=url)
        self.opened.append(page)
        return page

    async def close(self, driver):
        self.closed += 1


@pytest.fixture
def services(tmp_path):
    store = PreviewStore(str(tmp_path / "previews.db"))
    tracker = FakeTracker(active=True)
    cache = SmartResultCache(store, tracker)
    orchestrator = CaptureOrchestrator(
        cache,
        acquirer=ScriptedAcquirer(),
        settings=CaptureSettings(scroll_pad=0),
        adaptive_scroll_delay=False,
        sleep=RecordingSleep(),
    )
    deps = routes.set_dependencies(
        activity_tracker=tracker,
        preview_cache=cache,
        orchestrator=orchestrator,
        batch_loader=BatchLoader(orchestrator, sleep=RecordingSleep()),
        browser_session=FakeBrowserSession(),
        version="test",
    )
    yield deps
    routes.set_dependencies()
    store.close()


@pytest.fixture
def client(services):
    return TestClient(server.app)


def test_health(client, services):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["version"] == "test"
    assert body["browser_status"] == "running"
    assert body["cache_status"] == "ready"
    assert services.activity_tracker.updates == 0


def test_capture_then_fetch_preview(client, services):
    url = "https://example.com/article"
    response = client.post("/api/previews/capture", json={"url": url})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["subject_id"] == subject_id_for(url)
    assert (data["width"], data["height"]) == (1000, 2000)
    assert not data["from_cache"]
    assert services.browser_session.closed == 1

    image = client.get(f"/api/previews/{data['subject_id']}")
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"
    with Image.open(io.BytesIO(image.content)) as img:
        assert img.size == (1000, 2000)

    again = client.post("/api/previews/capture", json={"url": url})
    assert again.json()["data"]["from_cache"]


def test_thumbnail(client):
    client.post("/api/previews/capture", json={"url": "https://example.com/a", "subject_id": "a"})

    response = client.get("/api/previews/a/thumbnail", params={"max_dimension": 100})

    assert response.status_code == 200
    with Image.open(io.BytesIO(response.content)) as img:
        assert img.size == (50, 100)


def test_list_and_delete(client):
    client.post("/api/previews/capture", json={"url": "https://example.com/a", "subject_id": "a", "title": "A"})
    client.post("/api/previews/capture", json={"url": "https://example.com/b", "subject_id": "b"})

    listing = client.get("/api/previews").json()
    assert listing["count"] == 2
    assert {p["subject_id"] for p in listing["previews"]} == {"a", "b"}
    assert "A" in {p["title"] for p in listing["previews"]}

    assert client.delete("/api/previews/a").status_code == 200
    assert client.get("/api/previews/a").status_code == 404
    assert client.delete("/api/previews/a").status_code == 404

    cleared = client.delete("/api/previews").json()
    assert cleared["data"]["removed"] == 1


def test_missing_preview_is_404(client):
    assert client.get("/api/previews/nope").status_code == 404


def test_uncapturable_page_is_rejected(client):
    response = client.post("/api/previews/capture", json={"url": "about:blank"})

    assert response.status_code == 400
    body = response.json()
    assert not body["success"]
    assert body["error"]["type"] == "UncapturableSubjectError"


def test_invalid_settings_are_rejected(client):
    response = client.post(
        "/api/previews/capture",
        json={"url": "https://example.com", "settings": {"scroll_delay_ms": -5}},
    )

    assert response.status_code == 422


def test_api_calls_count_as_activity(client, services):
    client.get("/api/previews")
    client.get("/api/activity")

    assert services.activity_tracker.updates == 2


def test_stats_and_maintenance(client):
    client.post("/api/previews/capture", json={"url": "https://example.com/a", "subject_id": "a"})

    stats = client.get("/api/previews/stats").json()["data"]
    assert stats["storage"]["entries"] == 1
    assert stats["capture"]["captures_completed"] == 1

    # nothing expires while the tool is active
    assert client.post("/api/previews/sweep").json()["data"]["removed"] == 0
    assert client.post("/api/previews/enforce-quota").json()["data"]["removed"] == 0


def test_load_all_status_when_idle(client):
    response = client.get("/api/previews/load-all")

    assert response.status_code == 200
    assert response.json() == {"running": False, "result": None}


def test_routes_report_uninitialized_services(client):
    routes.set_dependencies()

    assert client.get("/api/previews").status_code == 503
    health = client.get("/api/health").json()
    assert health["cache_status"] == "not_initialized"
    assert health["browser_status"] == "not_initialized"


def test_preview_as_jpeg(client):
    client.post("/api/previews/capture", json={"url": "https://example.com/a", "subject_id": "a"})

    response = client.get("/api/previews/a", params={"format": "jpeg"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert client.get("/api/previews/a", params={"format": "gif"}).status_code == 400


def test_health_reports_idle_browser(client, services):
    services.browser_session.running = False

    assert client.get("/api/health").json()["browser_status"] == "idle"


def test_cached_preview_is_served_without_opening_a_page(client, services):
    url = "https://example.com/cached"
    png = encode_png(Image.new("RGB", (640, 480)))
    asyncio.run(services.preview_cache.put(subject_id_for(url), AssembledResult(png, 640, 480)))
    services.browser_session.fail_opens = True

    response = client.post("/api/previews/capture", json={"url": url})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["from_cache"]
    assert (data["width"], data["height"]) == (640, 480)
    assert services.browser_session.opened == []
    assert services.browser_session.closed == 0

    forced = client.post("/api/previews/capture", json={"url": url, "force": True})
    assert forced.status_code == 500
    assert forced.json()["error"]["type"] == "CaptureFailedError"


def test_startup_sweeps_previews_left_from_an_idle_period(tmp_path, clock):
    state_file = tmp_path / "activity_state.json"
    state_file.write_text(json.dumps({"last_activity": clock.now - 7200}))
    tracker = ActivityTracker(state_file=str(state_file), clock=clock)
    store = PreviewStore(str(tmp_path / "startup.db"))
    cache = SmartResultCache(store, tracker, clock=clock)
    store.put(CacheEntry("stale", b"png", PreviewMetadata(timestamp=clock.now - 7300)))

    async def scenario():
        await server.start_activity_and_cache(tracker, cache)
        await cache.stop()
        await tracker.stop()

    asyncio.run(scenario())

    assert store.count() == 0
    assert cache.expired == 1
    assert tracker.is_active()
    store.close()
