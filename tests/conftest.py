"""
Pytest configuration and fixtures for OpenTV backend tests.
"""
import pytest
from datetime import datetime, timedelta, timezone

from opentv.services.catalog import CatalogStore


class FixedClock:
    """Controllable UTC clock for cache/TTL tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock starting at 04:00 UTC, one hour after the daily refresh."""
    return FixedClock(datetime(2026, 3, 10, 4, 0, tzinfo=timezone.utc))


@pytest.fixture
def sample_channels():
    """Channels in iptv-org shape, in creation order."""
    return [
        {"id": "CNN.us", "name": "CNN", "country": "US", "categories": ["news"]},
        {"id": "ESPN.us", "name": "ESPN", "country": "US", "categories": ["sports"]},
        {"id": "BBCNews.uk", "name": "BBC News", "country": "UK", "categories": ["news"]},
        {"id": "FoxNews.us", "name": "Fox News", "country": "US", "categories": ["news"]},
        {"id": "SkySports.uk", "name": "Sky Sports", "country": "UK", "categories": ["sports"]},
        {"id": "France24.fr", "name": "France 24", "country": "FR", "categories": ["news", "general"]},
        {"id": "MSNBC.us", "name": "MSNBC", "country": "US", "categories": ["news"]},
        {"id": "SkyNews.uk", "name": "Sky News", "country": "UK", "categories": ["news", "general"]},
        {"id": "Arte.fr", "name": "Arte", "country": "FR", "categories": ["culture"]},
        {"id": "Eurosport.fr", "name": "Eurosport", "country": "FR", "categories": ["sports"]},
        {"id": "NoTags.us", "name": "No Tags", "country": "US", "categories": []},
    ]


@pytest.fixture
def sample_streams():
    """Streams in iptv-org shape."""
    return [
        {"channel": "CNN.us", "url": "http://example.com/cnn-1.m3u8", "quality": "720p"},
        {"channel": "CNN.us", "url": "http://example.com/cnn-2.m3u8", "quality": "1080p"},
        {"channel": "BBCNews.uk", "url": "http://example.com/bbc.m3u8", "http_referrer": "https://bbc.co.uk/"},
        {"channel": "ESPN.us", "url": "http://example.com/espn.m3u8", "user_agent": "VLC/3.0"},
    ]


@pytest.fixture
async def catalog(tmp_path):
    """Empty, initialized catalog in a temporary directory."""
    store = CatalogStore(str(tmp_path / "catalog.db"))
    await store.initialize()
    return store


@pytest.fixture
async def seeded_catalog(catalog, sample_channels, sample_streams):
    """Catalog populated with the sample channels and streams."""
    await catalog.store_channels(sample_channels)
    await catalog.store_streams(sample_streams)
    return catalog
