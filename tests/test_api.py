"""
HTTP API tests: listings, lookups, probing endpoints and error mapping.
"""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from opentv.config import get_settings
from opentv.main import app, limiter
from opentv.services.catalog import CatalogStore
from opentv.services.query_engine import QueryEngine
from opentv.services.stream_prober import StreamProber


class UrlMatchProber(StreamProber):
    """Treats a stream as working when its URL contains one of the markers."""

    def __init__(self, markers=("cnn-2", "bbc"), timeout: float = 1.0):
        super().__init__(timeout)
        self.markers = markers

    async def _check(self, url, timeout, referrer, user_agent):
        return any(marker in url for marker in self.markers)


@pytest.fixture
def api_env(tmp_path, monkeypatch, sample_channels, sample_streams):
    """Seed a catalog on disk and point the app's settings at it."""
    db_path = str(tmp_path / "catalog.db")

    async def seed():
        store = CatalogStore(db_path)
        await store.initialize()
        await store.store_channels(sample_channels)
        await store.store_streams(sample_streams)
        await store.store_categories([
            {"id": "news", "name": "News"},
            {"id": "sports", "name": "Sports"},
            {"id": "xxx", "name": "XXX"},
        ])
        await store.store_countries([
            {"code": "US", "name": "United States", "flag": "🇺🇸", "languages": ["eng"]},
            {"code": "UK", "name": "United Kingdom", "flag": "🇬🇧", "languages": ["eng"]},
        ])
        await store.store_languages([{"code": "eng", "name": "English"}])
        await store.record_sync_status("success", channel_count=len(sample_channels))

    asyncio.run(seed())

    monkeypatch.setenv("OPENTV_DATABASE_PATH", db_path)
    monkeypatch.setenv("OPENTV_PROBE_CACHE_PATH", str(tmp_path / "probe_cache.json"))
    monkeypatch.setattr("opentv.main.build_prober", lambda strategy, timeout: UrlMatchProber(timeout=timeout))
    get_settings.cache_clear()
    limiter.reset()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client(api_env):
    with TestClient(app) as test_client:
        yield test_client


def wait_for_probes(client, timeout: float = 5.0) -> dict:
    """Poll the status endpoint until nothing is pending."""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get("/api/probe/status").json()
        if not data["is_any_pending"]:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"probes still pending: {data['statuses']}")
        time.sleep(0.05)


class TestChannelListing:

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_cursor_pagination(self, client):
        first = client.get("/api/channels", params={"countries": "us", "limit": 2})
        assert first.status_code == 200
        data = first.json()
        assert [c["channel_id"] for c in data["channels"]] == ["CNN.us", "ESPN.us"]
        assert data["access_path"] == "country_merge"
        assert not data["done"]

        second = client.get("/api/channels", params={"countries": "us", "limit": 2, "cursor": data["next_cursor"]})
        data = second.json()
        assert [c["channel_id"] for c in data["channels"]] == ["FoxNews.us", "MSNBC.us"]

        third = client.get("/api/channels", params={"countries": "us", "limit": 2, "cursor": data["next_cursor"]})
        data = third.json()
        assert [c["channel_id"] for c in data["channels"]] == ["NoTags.us"]
        assert data["done"]
        assert data["next_cursor"] is None

    def test_listing_sets_cache_control_until_refresh(self, client):
        response = client.get("/api/channels")

        cache_control = response.headers["cache-control"]
        assert cache_control.startswith("public, max-age=")
        assert 0 < int(cache_control.split("=")[1]) <= 24 * 3600

    def test_channel_payload_shape(self, client):
        data = client.get("/api/channels", params={"categories": "news", "countries": "FR"}).json()

        assert data["access_path"] == "category_country"
        channel = data["channels"][0]
        assert channel["channel_id"] == "France24.fr"
        assert channel["primary_category"] == "news"
        assert "seq" not in channel

    def test_search_is_single_page(self, client):
        data = client.get("/api/channels", params={"search": "sky"}).json()

        assert [c["name"] for c in data["channels"]] == ["Sky News", "Sky Sports"]
        assert data["done"]
        assert data["next_cursor"] is None
        assert data["access_path"] == "search"

    def test_limit_is_capped(self, client, monkeypatch):
        monkeypatch.setenv("OPENTV_MAX_PAGE_SIZE", "3")
        get_settings.cache_clear()

        data = client.get("/api/channels", params={"limit": 50}).json()

        assert len(data["channels"]) == 3
        assert not data["done"]

    def test_invalid_limit_rejected(self, client):
        assert client.get("/api/channels", params={"limit": 0}).status_code == 422

    def test_malformed_cursor_is_bad_request(self, client):
        response = client.get("/api/channels", params={"cursor": "garbage"})

        assert response.status_code == 400

    def test_cursor_reused_with_other_filter_is_bad_request(self, client):
        data = client.get("/api/channels", params={"countries": "US", "limit": 1}).json()
        response = client.get("/api/channels", params={"countries": "UK", "limit": 1, "cursor": data["next_cursor"]})

        assert response.status_code == 400

    def test_store_unavailable_is_503(self, client, tmp_path):
        client.app.state.engine = QueryEngine(CatalogStore(str(tmp_path)))

        response = client.get("/api/channels", params={"countries": "US"})

        assert response.status_code == 503
        assert response.headers["retry-after"] == "30"


class TestLookups:

    def test_channel_detail_includes_streams(self, client):
        response = client.get("/api/channels/CNN.us")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "CNN"
        assert [s["url"] for s in data["streams"]] == [
            "http://example.com/cnn-1.m3u8",
            "http://example.com/cnn-2.m3u8",
        ]

    def test_unknown_channel_is_404(self, client):
        assert client.get("/api/channels/Nope.xx").status_code == 404

    def test_streams_endpoint(self, client):
        data = client.get("/api/streams/BBCNews.uk").json()
        assert data["count"] == 1
        assert data["streams"][0]["referrer"] == "https://bbc.co.uk/"

        empty = client.get("/api/streams/Arte.fr").json()
        assert empty == {"channel_id": "Arte.fr", "streams": [], "count": 0}

    def test_categories_hide_adult(self, client):
        categories = client.get("/api/categories").json()["categories"]
        by_id = {c["id"]: c for c in categories}

        assert "xxx" not in by_id
        assert by_id["news"]["channel_count"] == 6

    def test_countries_and_languages(self, client):
        countries = {c["code"]: c for c in client.get("/api/countries").json()["countries"]}
        assert countries["US"]["channel_count"] == 5
        assert countries["UK"]["flag"] == "🇬🇧"

        languages = client.get("/api/languages").json()["languages"]
        assert languages == [{"code": "eng", "name": "English"}]

    def test_stats(self, client):
        data = client.get("/api/stats").json()

        assert data["total_channels"] == 11
        assert data["total_streams"] == 4
        assert data["channels_with_streams"] == 3
        assert data["last_sync"]["status"] == "success"
        assert data["probing"]["running"] is True


class TestProbeEndpoints:

    def test_probe_round_trip(self, client):
        response = client.post("/api/probe", json={
            "channel_ids": ["CNN.us", "BBCNews.uk", "ESPN.us", "Arte.fr"],
            "visible_ids": ["BBCNews.uk"],
        })
        assert response.status_code == 200
        assert set(response.json()["statuses"]) == {"CNN.us", "BBCNews.uk", "ESPN.us", "Arte.fr"}

        data = wait_for_probes(client)

        assert data["statuses"] == {
            "CNN.us": "working",
            "BBCNews.uk": "working",
            "ESPN.us": "failed",
            "Arte.fr": "failed",
        }
        assert data["working_stream_urls"]["CNN.us"] == ["http://example.com/cnn-2.m3u8"]
        assert data["scheduler"]["probed"] == 4

    def test_resubmit_uses_cached_verdicts(self, client):
        client.post("/api/probe", json={"channel_ids": ["CNN.us", "ESPN.us"]})
        wait_for_probes(client)

        data = client.post("/api/probe", json={"channel_ids": ["ESPN.us", "CNN.us"]}).json()

        assert data["statuses"] == {"CNN.us": "working", "ESPN.us": "failed"}
        assert not data["is_any_pending"]

    def test_visibility_endpoint(self, client):
        response = client.post("/api/probe/visibility", json={"channel_id": "CNN.us", "visible": True})

        assert response.json() == {"channel_id": "CNN.us", "visible": True}

    def test_oversized_probe_request_rejected(self, client):
        ids = [f"ch{i}" for i in range(501)]

        assert client.post("/api/probe", json={"channel_ids": ids}).status_code == 422

    def test_probing_disabled_is_409(self, api_env, monkeypatch):
        monkeypatch.setenv("OPENTV_PROBING_ENABLED", "false")
        get_settings.cache_clear()

        with TestClient(app) as client:
            assert client.post("/api/probe", json={"channel_ids": ["CNN.us"]}).status_code == 409
            assert client.get("/api/probe/status").status_code == 409
            assert client.get("/api/stats").json()["probing"] is None
