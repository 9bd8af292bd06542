"""
SQLite-backed catalog store for iptv-org channel data.
Provides indexed point lookups and ordered range scans for the query engine.

Channels keep the creation sequence assigned on first insert; upserts from
later syncs update a row in place, so pagination order is stable across
refreshes.
"""
import aiosqlite
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

from opentv.config import get_settings

logger = logging.getLogger(__name__)

# Position in a creation-ordered scan: (seq, channel_id)
ScanPosition = tuple[int, str]

CHANNEL_COLUMNS = "c.seq, c.channel_id, c.name, c.logo, c.country, c.categories, c.network"

HIDDEN_CATEGORIES = ("xxx",)


class StoreUnavailable(Exception):
    """The catalog database cannot be opened or queried."""


class CatalogStore:
    """Async SQLite catalog of channels, streams and metadata."""

    def __init__(self, db_path: Optional[str] = None):
        settings = get_settings()
        self.db_path = db_path or settings.database_path
        self._ensure_directory()

    def _ensure_directory(self):
        """Create data directory if it doesn't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as e:
            logger.error(f"Catalog store error ({self.db_path}): {e}")
            raise StoreUnavailable(str(e)) from e

    async def initialize(self):
        """Create database tables if they don't exist."""
        async with self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS channels (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    logo TEXT,
                    country TEXT NOT NULL,
                    categories TEXT NOT NULL DEFAULT '[]',
                    network TEXT
                )
            """)

            # One row per (channel, category) tag; carries country for compound scans
            await db.execute("""
                CREATE TABLE IF NOT EXISTS channel_categories (
                    channel_seq INTEGER NOT NULL,
                    channel_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    country TEXT NOT NULL,
                    PRIMARY KEY (channel_seq, category)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS streams (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    channel_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    quality TEXT,
                    referrer TEXT,
                    user_agent TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS countries (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    flag TEXT,
                    languages TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS languages (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS sync_status (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    last_sync_at TIMESTAMP NOT NULL,
                    status TEXT NOT NULL,
                    channel_count INTEGER,
                    error TEXT
                )
            """)

            # Indexes for the query engine's access paths
            await db.execute("CREATE INDEX IF NOT EXISTS idx_channels_country ON channels(country, seq)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_channels_name ON channels(name)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_channel_categories_category ON channel_categories(category, channel_seq)")
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_channel_categories_category_country "
                "ON channel_categories(category, country, channel_seq)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_streams_channel ON streams(channel_id, seq)")

            await db.commit()

    @staticmethod
    def _row_to_channel(row) -> dict:
        return {
            "seq": row["seq"],
            "channel_id": row["channel_id"],
            "name": row["name"],
            "logo": row["logo"],
            "country": row["country"],
            "categories": json.loads(row["categories"] or "[]"),
            "network": row["network"],
        }

    # ==================== CATALOG WRITES (used by the external sync) ====================

    async def store_channels(self, channels: list[dict]) -> int:
        """Bulk upsert channels in iptv-org shape. NSFW and closed channels are skipped."""
        stored = 0
        async with self._connect() as db:
            for ch in channels:
                if ch.get("is_nsfw") or ch.get("closed") or not ch.get("id") or not ch.get("country"):
                    continue

                country = ch["country"].upper()
                categories = []
                for cat in ch.get("categories") or []:
                    cat = cat.lower()
                    if cat not in categories:
                        categories.append(cat)

                # ON CONFLICT keeps the row (and its seq) instead of re-inserting it
                await db.execute(
                    """INSERT INTO channels (channel_id, name, logo, country, categories, network)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(channel_id) DO UPDATE SET
                           name = excluded.name,
                           logo = excluded.logo,
                           country = excluded.country,
                           categories = excluded.categories,
                           network = excluded.network""",
                    (
                        ch["id"],
                        ch.get("name") or ch["id"],
                        ch.get("logo"),
                        country,
                        json.dumps(categories),
                        ch.get("network"),
                    )
                )
                cursor = await db.execute("SELECT seq FROM channels WHERE channel_id = ?", (ch["id"],))
                seq = (await cursor.fetchone())["seq"]

                await db.execute("DELETE FROM channel_categories WHERE channel_seq = ?", (seq,))
                await db.executemany(
                    """INSERT INTO channel_categories (channel_seq, channel_id, category, country)
                       VALUES (?, ?, ?, ?)""",
                    [(seq, ch["id"], cat, country) for cat in categories]
                )
                stored += 1
            await db.commit()
        return stored

    async def store_streams(self, streams: list[dict]) -> int:
        """Bulk upsert streams in iptv-org shape. Insertion order is kept as probing order."""
        stored = 0
        async with self._connect() as db:
            for stream in streams:
                channel_id = stream.get("channel")
                url = stream.get("url")
                if not channel_id or not url:
                    continue
                # Stable ID from URL and channel (not index-dependent)
                stream_id = hashlib.md5(f"{url}{channel_id}".encode()).hexdigest()[:12]
                await db.execute(
                    """INSERT INTO streams (id, channel_id, url, quality, referrer, user_agent)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                           quality = excluded.quality,
                           referrer = excluded.referrer,
                           user_agent = excluded.user_agent""",
                    (
                        stream_id,
                        channel_id,
                        url,
                        stream.get("quality"),
                        stream.get("referrer") or stream.get("http_referrer"),
                        stream.get("user_agent"),
                    )
                )
                stored += 1
            await db.commit()
        return stored

    async def store_categories(self, categories: list[dict]):
        """Replace the category list."""
        async with self._connect() as db:
            await db.execute("DELETE FROM categories")
            await db.executemany(
                "INSERT INTO categories (id, name) VALUES (?, ?)",
                [(c["id"].lower(), c.get("name") or c["id"]) for c in categories if c.get("id")]
            )
            await db.commit()

    async def store_countries(self, countries: list[dict]):
        """Replace the country list."""
        async with self._connect() as db:
            await db.execute("DELETE FROM countries")
            await db.executemany(
                "INSERT INTO countries (code, name, flag, languages) VALUES (?, ?, ?, ?)",
                [
                    (
                        c["code"].upper(),
                        c.get("name") or c["code"],
                        c.get("flag", ""),
                        json.dumps(c.get("languages", [])),
                    )
                    for c in countries if c.get("code")
                ]
            )
            await db.commit()

    async def store_languages(self, languages: list[dict]):
        """Replace the language list."""
        async with self._connect() as db:
            await db.execute("DELETE FROM languages")
            await db.executemany(
                "INSERT INTO languages (code, name) VALUES (?, ?)",
                [(lang["code"], lang.get("name") or lang["code"]) for lang in languages if lang.get("code")]
            )
            await db.commit()

    async def record_sync_status(
        self,
        status: str,
        channel_count: Optional[int] = None,
        error: Optional[str] = None,
        synced_at: Optional[datetime] = None
    ):
        """Record the outcome of an upstream sync run."""
        synced_at = synced_at or datetime.now(timezone.utc)
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO sync_status (last_sync_at, status, channel_count, error) VALUES (?, ?, ?, ?)",
                (synced_at.isoformat(), status, channel_count, error)
            )
            await db.commit()

    # ==================== POINT LOOKUPS ====================

    async def get_channel(self, channel_id: str) -> Optional[dict]:
        """Get single channel by ID."""
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {CHANNEL_COLUMNS} FROM channels c WHERE c.channel_id = ?",
                (channel_id,)
            )
            row = await cursor.fetchone()
            return self._row_to_channel(row) if row else None

    async def get_streams_for_channel(self, channel_id: str) -> list[dict]:
        """Get all streams for a channel in probing order."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT channel_id, url, quality, referrer, user_agent
                   FROM streams WHERE channel_id = ? ORDER BY seq""",
                (channel_id,)
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    # ==================== ORDERED SCANS ====================

    async def _scan(self, sql: str, params: list, after: Optional[ScanPosition], limit: int) -> list[dict]:
        if after is not None:
            sql += " AND (c.seq, c.channel_id) > (?, ?)"
            params = params + [after[0], after[1]]
        sql += " ORDER BY c.seq, c.channel_id LIMIT ?"
        async with self._connect() as db:
            cursor = await db.execute(sql, params + [limit])
            rows = await cursor.fetchall()
            return [self._row_to_channel(row) for row in rows]

    async def scan_channels(self, after: Optional[ScanPosition] = None, limit: int = 50) -> list[dict]:
        """All channels in creation order."""
        return await self._scan(f"SELECT {CHANNEL_COLUMNS} FROM channels c WHERE 1=1", [], after, limit)

    async def scan_by_country(self, country: str, after: Optional[ScanPosition] = None, limit: int = 50) -> list[dict]:
        """Channels of one country in creation order."""
        return await self._scan(
            f"SELECT {CHANNEL_COLUMNS} FROM channels c WHERE c.country = ?",
            [country.upper()], after, limit
        )

    async def scan_by_category(self, category: str, after: Optional[ScanPosition] = None, limit: int = 50) -> list[dict]:
        """Channels tagged with one category in creation order."""
        return await self._scan(
            f"""SELECT {CHANNEL_COLUMNS} FROM channel_categories cc
                JOIN channels c ON c.seq = cc.channel_seq
                WHERE cc.category = ?""",
            [category.lower()], after, limit
        )

    async def scan_by_category_country(
        self,
        category: str,
        country: str,
        after: Optional[ScanPosition] = None,
        limit: int = 50
    ) -> list[dict]:
        """Channels of one (category, country) pair in creation order."""
        return await self._scan(
            f"""SELECT {CHANNEL_COLUMNS} FROM channel_categories cc
                JOIN channels c ON c.seq = cc.channel_seq
                WHERE cc.category = ? AND cc.country = ?""",
            [category.lower(), country.upper()], after, limit
        )

    async def search_channels(self, text: str, limit: int = 50) -> list[dict]:
        """
        Ranked name search.

        Exact name matches rank first, then prefix matches, then any substring
        match; shorter names win within a rank.
        """
        escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self._connect() as db:
            cursor = await db.execute(
                f"""SELECT {CHANNEL_COLUMNS} FROM channels c
                    WHERE c.name LIKE ? ESCAPE '\\'
                    ORDER BY
                        CASE
                            WHEN lower(c.name) = lower(?) THEN 0
                            WHEN c.name LIKE ? ESCAPE '\\' THEN 1
                            ELSE 2
                        END,
                        length(c.name),
                        c.seq
                    LIMIT ?""",
                (f"%{escaped}%", text, f"{escaped}%", limit)
            )
            rows = await cursor.fetchall()
            return [self._row_to_channel(row) for row in rows]

    # ==================== METADATA ====================

    async def get_categories(self) -> list[dict]:
        """Get categories with channel counts (adult category hidden)."""
        placeholders = ",".join("?" * len(HIDDEN_CATEGORIES))
        async with self._connect() as db:
            cursor = await db.execute(
                f"""SELECT cat.id, cat.name, COUNT(cc.channel_seq) AS channel_count
                    FROM categories cat
                    LEFT JOIN channel_categories cc ON cc.category = cat.id
                    WHERE cat.id NOT IN ({placeholders})
                    GROUP BY cat.id, cat.name
                    ORDER BY cat.name""",
                HIDDEN_CATEGORIES
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def get_countries(self) -> list[dict]:
        """Get countries with channel counts."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT co.code, co.name, co.flag, co.languages, COUNT(c.seq) AS channel_count
                   FROM countries co
                   LEFT JOIN channels c ON c.country = co.code
                   GROUP BY co.code, co.name, co.flag, co.languages
                   ORDER BY co.name"""
            )
            rows = await cursor.fetchall()
            return [
                {
                    "code": r["code"],
                    "name": r["name"],
                    "flag": r["flag"] or "",
                    "languages": json.loads(r["languages"] or "[]"),
                    "channel_count": r["channel_count"],
                }
                for r in rows
            ]

    async def get_languages(self) -> list[dict]:
        """Get all languages."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT code, name FROM languages ORDER BY name")
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def get_sync_status(self) -> Optional[dict]:
        """Most recent sync outcome, if any."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT last_sync_at, status, channel_count, error
                   FROM sync_status ORDER BY id DESC LIMIT 1"""
            )
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def get_stats(self) -> dict:
        """Row counts for the stats endpoint."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT COUNT(*) FROM channels")
            total_channels = (await cursor.fetchone())[0]

            cursor = await db.execute("SELECT COUNT(*) FROM streams")
            total_streams = (await cursor.fetchone())[0]

            cursor = await db.execute("SELECT COUNT(DISTINCT channel_id) FROM streams")
            channels_with_streams = (await cursor.fetchone())[0]

            return {
                "total_channels": total_channels,
                "total_streams": total_streams,
                "channels_with_streams": channels_with_streams,
            }
