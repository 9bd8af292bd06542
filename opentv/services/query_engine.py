"""
Channel listing query engine.

Serves filtered, paginated channel listings from the catalog store. Each
request is mapped to the most selective index path available; multi-key
filters (several countries, or several categories) are served by merging one
creation-ordered scan per key, so every listing is ordered by creation
sequence and a page cursor is simply the position of the last channel
returned.

Text search is ranked, not creation-ordered, and is therefore served as a
single page with no continuation cursor.
"""
import base64
import binascii
import hashlib
import heapq
import json
import logging
from contextlib import aclosing
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, Optional

from opentv.models.channel import AccessPath, Channel, ChannelFilter, ChannelPage, Stream
from opentv.services.catalog import CatalogStore, ScanPosition

logger = logging.getLogger(__name__)

# Search results are post-filtered in memory, so fetch extra rows when filters apply
SEARCH_OVERFETCH = 5

ScanFn = Callable[..., Awaitable[list[dict]]]
Predicate = Callable[[dict], bool]


class InvalidCursor(ValueError):
    """Cursor is malformed or was issued for a different filter."""


def _post_filter(countries: list[str], categories: list[str]) -> Optional[Predicate]:
    if not countries and not categories:
        return None
    country_set = set(countries)
    category_set = set(categories)

    def matches(row: dict) -> bool:
        if country_set and row["country"] not in country_set:
            return False
        if category_set and not category_set.intersection(row["categories"]):
            return False
        return True

    return matches


class QueryEngine:
    """Builds listing pages from the catalog store."""

    def __init__(self, catalog: CatalogStore, batch_size: int = 50):
        self.catalog = catalog
        self.batch_size = batch_size

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        row = await self.catalog.get_channel(channel_id)
        return Channel(**row) if row else None

    async def get_streams(self, channel_id: str) -> list[Stream]:
        rows = await self.catalog.get_streams_for_channel(channel_id)
        return [Stream(**row) for row in rows]

    async def query_channels(self, channel_filter: ChannelFilter) -> ChannelPage:
        """Return one page of channels matching the filter."""
        if channel_filter.search_text:
            return await self._search_page(channel_filter)

        path, sources, predicate = self._plan(channel_filter)
        fingerprint = self._fingerprint(channel_filter)
        after = None
        if channel_filter.cursor:
            after = self._decode_cursor(channel_filter.cursor, path, fingerprint)

        page_size = channel_filter.page_size
        batch = max(self.batch_size, page_size + 1)
        scans = [self._iter_scan(scan, after, batch) for scan in sources]

        channels: list[dict] = []
        has_more = False
        async with aclosing(self._merge(scans)) as merged:
            async for row in merged:
                if predicate and not predicate(row):
                    continue
                if len(channels) == page_size:
                    has_more = True
                    break
                channels.append(row)

        cursor = None
        if has_more:
            last = channels[-1]
            cursor = self._encode_cursor(path, fingerprint, (last["seq"], last["channel_id"]))

        logger.debug(f"Listing via {path.value}: {len(channels)} channels, more={has_more}")
        return ChannelPage(
            channels=[Channel(**row) for row in channels],
            cursor=cursor,
            done=not has_more,
            access_path=path
        )

    async def _search_page(self, channel_filter: ChannelFilter) -> ChannelPage:
        if channel_filter.cursor:
            raise InvalidCursor("Search results are a single page")

        predicate = _post_filter(channel_filter.countries, channel_filter.categories)
        limit = channel_filter.page_size * (SEARCH_OVERFETCH if predicate else 1)
        rows = await self.catalog.search_channels(channel_filter.search_text, limit=limit)
        if predicate:
            rows = [row for row in rows if predicate(row)]

        return ChannelPage(
            channels=[Channel(**row) for row in rows[:channel_filter.page_size]],
            cursor=None,
            done=True,
            access_path=AccessPath.SEARCH
        )

    def _plan(self, channel_filter: ChannelFilter) -> tuple[AccessPath, list[ScanFn], Optional[Predicate]]:
        """Pick the cheapest access path: scans to merge plus an optional post-filter."""
        countries = channel_filter.countries
        categories = channel_filter.categories

        if len(categories) == 1 and len(countries) == 1:
            scan = partial(self.catalog.scan_by_category_country, categories[0], countries[0])
            return AccessPath.CATEGORY_COUNTRY, [scan], None

        if len(categories) == 1:
            scan = partial(self.catalog.scan_by_category, categories[0])
            return AccessPath.CATEGORY, [scan], _post_filter(countries, [])

        if countries:
            scans = [partial(self.catalog.scan_by_country, country) for country in countries]
            return AccessPath.COUNTRY_MERGE, scans, _post_filter([], categories)

        if categories:
            scans = [partial(self.catalog.scan_by_category, category) for category in categories]
            return AccessPath.CATEGORY_MERGE, scans, None

        return AccessPath.FULL_SCAN, [self.catalog.scan_channels], None

    @staticmethod
    async def _iter_scan(scan: ScanFn, after: Optional[ScanPosition], batch: int) -> AsyncIterator[dict]:
        """Lazily page through one index scan, strictly after `after`."""
        position = after
        while True:
            rows = await scan(after=position, limit=batch)
            for row in rows:
                yield row
            if len(rows) < batch:
                return
            position = (rows[-1]["seq"], rows[-1]["channel_id"])

    @staticmethod
    async def _merge(scans: list[AsyncIterator[dict]]) -> AsyncIterator[dict]:
        """K-way merge of creation-ordered scans, dropping duplicate channels."""
        heap = []
        try:
            for index, scan in enumerate(scans):
                row = await anext(scan, None)
                if row is not None:
                    heapq.heappush(heap, (row["seq"], row["channel_id"], index, row))

            last_key = None
            while heap:
                seq, channel_id, index, row = heapq.heappop(heap)
                if (seq, channel_id) != last_key:
                    last_key = (seq, channel_id)
                    yield row
                following = await anext(scans[index], None)
                if following is not None:
                    heapq.heappush(heap, (following["seq"], following["channel_id"], index, following))
        finally:
            for scan in scans:
                await scan.aclose()

    @staticmethod
    def _fingerprint(channel_filter: ChannelFilter) -> str:
        params = {"countries": channel_filter.countries, "categories": channel_filter.categories}
        return hashlib.md5(json.dumps(params, sort_keys=True).encode()).hexdigest()[:8]

    @staticmethod
    def _encode_cursor(path: AccessPath, fingerprint: str, position: ScanPosition) -> str:
        payload = {"p": path.value, "f": fingerprint, "s": position[0], "c": position[1]}
        raw = json.dumps(payload, separators=(",", ":")).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    @staticmethod
    def _decode_cursor(cursor: str, path: AccessPath, fingerprint: str) -> ScanPosition:
        try:
            padded = cursor + "=" * (-len(cursor) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
            position = (int(payload["s"]), str(payload["c"]))
            cursor_path = payload["p"]
            cursor_fingerprint = payload["f"]
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise InvalidCursor("Malformed cursor") from e

        if cursor_path != path.value or cursor_fingerprint != fingerprint:
            raise InvalidCursor("Cursor does not belong to this filter")
        return position
