#!/usr/bin/env python3
"""
Probe Audit Script

Queries one page of channels with the same filters the API accepts, probes
every channel through the probing scheduler and reports which ones have a
working stream.

Usage:
    python -m opentv.scripts.probe_audit --countries UK --categories news --limit 50

Output:
    data/probe_audit_YYYYMMDD_HHMMSS.json
"""

import argparse
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from opentv.config import get_settings
from opentv.models.channel import ChannelFilter
from opentv.services.catalog import CatalogStore
from opentv.services.probe_cache import ProbeCache
from opentv.services.probe_scheduler import probe_channels
from opentv.services.query_engine import QueryEngine
from opentv.services.stream_prober import StreamProber, build_prober

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_audit(
    channel_filter: ChannelFilter,
    prober: StreamProber,
    catalog: CatalogStore,
    cache: Optional[ProbeCache] = None,
    concurrency: int = 3,
) -> dict:
    """
    Probe one listing page and build a report.
    """
    engine = QueryEngine(catalog)
    page = await engine.query_channels(channel_filter)
    logger.info(f"Retrieved {len(page.channels)} channels via {page.access_path.value}")

    # Without a persistent cache every channel is probed afresh
    cache = cache or ProbeCache(path=None)
    scheduler = await probe_channels(
        page.channels,
        engine.get_streams,
        prober,
        cache,
        max_concurrent=concurrency,
        probe_timeout=prober.timeout,
    )
    try:
        await scheduler.wait_idle()
        statuses = scheduler.status_by_channel_id
        working_urls = scheduler.working_stream_urls
    finally:
        await scheduler.close()

    results = [
        {
            "channel_id": ch.channel_id,
            "name": ch.name,
            "country": ch.country,
            "status": statuses[ch.channel_id].value,
            "working_stream_url": (working_urls.get(ch.channel_id) or [None])[0],
        }
        for ch in page.channels
    ]
    working = sum(1 for r in results if r["status"] == "working")

    return {
        "timestamp": datetime.now().isoformat(),
        "filter": channel_filter.model_dump(exclude={"cursor"}),
        "access_path": page.access_path.value,
        "channel_count": len(results),
        "working": working,
        "failed": len(results) - working,
        "percent_working": round(working / len(results) * 100, 1) if results else 0.0,
        "results": results,
    }


def print_summary(report: dict):
    """
    Print a human-readable summary of the audit.
    """
    print("\n" + "=" * 60)
    print("CHANNEL PROBE AUDIT RESULTS")
    print("=" * 60)
    print(f"Probed: {report['channel_count']} channels ({report['access_path']})")
    print(f"Time: {report['timestamp']}")
    print("-" * 60)
    print(f"{'Working':30} {report['working']:5} ({report['percent_working']:5.1f}%)")
    print(f"{'Failed':30} {report['failed']:5}")
    print("-" * 60)

    failed = [r for r in report["results"] if r["status"] == "failed"][:10]
    if failed:
        print("\nFAILED CHANNELS (sample):")
        for r in failed:
            print(f"   - {r['channel_id']}: {r['name']}")

    print("\n" + "=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Channel Probe Audit")
    parser.add_argument("--countries", type=str, default=None, help="Comma-separated country codes")
    parser.add_argument("--categories", type=str, default=None, help="Comma-separated category IDs")
    parser.add_argument("--search", type=str, default=None, help="Channel name search")
    parser.add_argument("--limit", "-l", type=int, default=50, help="Channels to probe (default: 50)")
    parser.add_argument(
        "--strategy",
        choices=["http", "ffprobe"],
        default=None,
        help="Probe strategy (default: from settings)"
    )
    parser.add_argument("--concurrency", "-c", type=int, default=None, help="Concurrent probes")
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path (default: data/probe_audit_TIMESTAMP.json)"
    )
    return parser


async def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)
    settings = get_settings()

    channel_filter = ChannelFilter(
        countries=args.countries,
        categories=args.categories,
        search=args.search,
        page_size=args.limit,
    )
    catalog = CatalogStore(settings.database_path)
    prober = build_prober(args.strategy or settings.probe_strategy, timeout=settings.probe_timeout_seconds)

    report = await run_audit(
        channel_filter,
        prober,
        catalog,
        concurrency=args.concurrency or settings.max_concurrent_probes,
    )

    if not report["results"]:
        print("Audit found no channels for this filter")
        return

    print_summary(report)

    output_path = args.output or f"data/probe_audit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(report, f, indent=2, default=str)

    print(f"\nFull report saved to: {output_path}")


if __name__ == "__main__":
    asyncio.run(main())
