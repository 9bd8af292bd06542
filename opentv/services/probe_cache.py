"""
Persistent cache of stream probe verdicts, keyed by channel id.

Entries expire on a status-dependent TTL (working streams are trusted longer
than failures, which are often transient) and all entries written before the
most recent daily catalog refresh are stale regardless of age. The cache is a
pure optimization: persistence errors are logged and skipped.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from opentv.models.probe import ProbeCacheEntry
from opentv.services.refresh import last_refresh_boundary, utcnow

logger = logging.getLogger(__name__)


class ProbeCache:
    """Time-windowed, capacity-bounded probe verdict cache backed by a JSON file."""

    MAX_ENTRIES = 1000
    WORKING_TTL = timedelta(hours=24)
    FAILED_TTL = timedelta(hours=6)
    REFRESH_HOUR_UTC = 3

    def __init__(
        self,
        path: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        max_entries: int = MAX_ENTRIES,
        working_ttl: timedelta = WORKING_TTL,
        failed_ttl: timedelta = FAILED_TTL,
        refresh_hour_utc: Optional[int] = REFRESH_HOUR_UTC,
    ):
        self.path = Path(path) if path else None
        self.clock = clock
        self.max_entries = max_entries
        self.working_ttl = working_ttl
        self.failed_ttl = failed_ttl
        self.refresh_hour_utc = refresh_hour_utc
        self._entries: dict[str, ProbeCacheEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._entries

    def load(self) -> int:
        """Load persisted entries, starting empty if the file is missing or unreadable."""
        self._entries = {}
        if not self.path or not self.path.exists():
            logger.info("No probe cache found - starting empty")
            return 0

        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load probe cache {self.path}: {e}")
            return 0

        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed probe cache {self.path}")
            return 0

        for channel_id, data in raw.items():
            try:
                self._entries[channel_id] = ProbeCacheEntry.model_validate(data)
            except ValidationError:
                logger.debug(f"Dropping malformed probe cache entry for {channel_id}")

        logger.info(f"Loaded probe cache: {len(self._entries)} entries from {self.path}")
        return len(self._entries)

    def is_fresh(self, entry: ProbeCacheEntry) -> bool:
        """True if the entry is within its TTL and newer than the last catalog refresh."""
        now = self.clock()
        # Written by a skewed clock
        if entry.timestamp > now:
            return False
        if self.refresh_hour_utc is not None:
            if entry.timestamp < last_refresh_boundary(now, self.refresh_hour_utc):
                return False
        ttl = self.working_ttl if entry.status == "working" else self.failed_ttl
        return now - entry.timestamp <= ttl

    async def get(self, channel_id: str) -> Optional[ProbeCacheEntry]:
        """Cached verdict for a channel, or None if absent or stale."""
        entry = self._entries.get(channel_id)
        if entry is None or not self.is_fresh(entry):
            return None
        return entry

    async def put(self, channel_id: str, entry: ProbeCacheEntry):
        """Upsert a verdict, evicting the oldest entries beyond capacity."""
        async with self._lock:
            self._entries[channel_id] = entry

            overflow = len(self._entries) - self.max_entries
            if overflow > 0:
                oldest = sorted(self._entries.items(), key=lambda item: (item[1].timestamp, item[0]))
                for key, _ in oldest[:overflow]:
                    del self._entries[key]

            self._save()

    async def evict_expired(self) -> int:
        """Remove every stale entry. Returns the number removed."""
        async with self._lock:
            stale = [key for key, entry in self._entries.items() if not self.is_fresh(entry)]
            for key in stale:
                del self._entries[key]
            if stale:
                self._save()
        if stale:
            logger.info(f"Evicted {len(stale)} expired probe cache entries")
        return len(stale)

    def _save(self):
        """Write all entries to disk; failures are logged and skipped."""
        if not self.path:
            return
        data = {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning(f"Failed to persist probe cache to {self.path}: {e}")
