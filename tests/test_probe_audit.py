"""
Tests for the probe audit script.
"""
import json

import pytest

from opentv.config import get_settings
from opentv.models.channel import ChannelFilter
from opentv.scripts import probe_audit
from opentv.services.stream_prober import StreamProber


class BbcOnlyProber(StreamProber):

    async def _check(self, url, timeout, referrer, user_agent):
        return "bbc" in url


class TestRunAudit:

    @pytest.mark.asyncio
    async def test_report_for_country_page(self, seeded_catalog):
        report = await probe_audit.run_audit(ChannelFilter(countries="UK"), BbcOnlyProber(timeout=1.0), seeded_catalog)

        assert report["access_path"] == "country_merge"
        assert report["channel_count"] == 3
        assert report["working"] == 1
        assert report["failed"] == 2
        assert report["percent_working"] == 33.3

        by_id = {r["channel_id"]: r for r in report["results"]}
        assert by_id["BBCNews.uk"]["working_stream_url"] == "http://example.com/bbc.m3u8"
        assert by_id["SkyNews.uk"]["status"] == "failed"
        assert by_id["SkyNews.uk"]["working_stream_url"] is None

    @pytest.mark.asyncio
    async def test_empty_page_report(self, seeded_catalog):
        report = await probe_audit.run_audit(ChannelFilter(countries="ZZ"), BbcOnlyProber(), seeded_catalog)

        assert report["channel_count"] == 0
        assert report["percent_working"] == 0.0


class TestCommandLine:

    def test_parser_defaults(self):
        args = probe_audit.build_parser().parse_args([])

        assert args.limit == 50
        assert args.strategy is None
        assert args.output is None

    def test_parser_rejects_unknown_strategy(self):
        with pytest.raises(SystemExit):
            probe_audit.build_parser().parse_args(["--strategy", "ping"])

    @pytest.mark.asyncio
    async def test_main_writes_report(self, seeded_catalog, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("OPENTV_DATABASE_PATH", str(seeded_catalog.db_path))
        monkeypatch.setattr(probe_audit, "build_prober", lambda strategy, timeout: BbcOnlyProber(timeout=timeout))
        get_settings.cache_clear()
        output = tmp_path / "reports" / "audit.json"

        try:
            await probe_audit.main(["--countries", "UK", "--categories", "news", "-o", str(output)])
        finally:
            get_settings.cache_clear()

        report = json.loads(output.read_text())
        assert [r["channel_id"] for r in report["results"]] == ["BBCNews.uk", "SkyNews.uk"]
        assert report["filter"]["countries"] == ["UK"]
        assert "CHANNEL PROBE AUDIT RESULTS" in capsys.readouterr().out
