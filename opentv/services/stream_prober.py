"""
Stream liveness probers.

A prober answers one question: is this stream URL playable right now? Every
probe has a hard time budget and collapses timeouts, network errors, bad
status codes and undecodable media into False.

Two strategies are available:
- HttpStreamProber: HTTP GET reachability, plus an #EXTM3U signature check
  for HLS manifests. Cheap.
- FfprobeStreamProber: opens the stream with ffprobe and requires at least
  one decodable audio/video stream. Heavier but validates playability.
"""
import asyncio
import json
import logging
from typing import Iterable, Optional

import httpx

from opentv.models.channel import Stream
from opentv.models.probe import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

MANIFEST_CONTENT_TYPES = ("application/vnd.apple.mpegurl", "application/x-mpegurl", "audio/mpegurl")


class StreamProber:
    """Base prober: `probe` never raises and never exceeds its timeout."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.timeout = timeout

    async def probe(
        self,
        url: str,
        timeout: Optional[float] = None,
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(self._check(url, timeout, referrer, user_agent), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Probe timed out after {timeout}s: {url}")
            return False
        except Exception as e:
            logger.debug(f"Probe failed for {url}: {str(e)[:100]}")
            return False

    async def _check(self, url: str, timeout: float, referrer: Optional[str], user_agent: Optional[str]) -> bool:
        raise NotImplementedError


class HttpStreamProber(StreamProber):
    """Reachability check over HTTP GET."""

    MANIFEST_PEEK_BYTES = 4096

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        verify: bool = False,  # Some streams have bad certs
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout)
        self.verify = verify
        self._transport = transport

    @staticmethod
    def _build_headers(referrer: Optional[str], user_agent: Optional[str]) -> dict:
        """Build request headers from stream metadata."""
        headers = {"User-Agent": user_agent or DEFAULT_USER_AGENT}
        if referrer:
            headers["Referer"] = referrer
        return headers

    @staticmethod
    def _is_manifest(url: str, response: httpx.Response) -> bool:
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type in MANIFEST_CONTENT_TYPES:
            return True
        return httpx.URL(url).path.lower().endswith(".m3u8")

    async def _check(self, url: str, timeout: float, referrer: Optional[str], user_agent: Optional[str]) -> bool:
        headers = self._build_headers(referrer, user_agent)
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            verify=self.verify,
            transport=self._transport,
        ) as client:
            # Stream the body so media segments are never downloaded in full
            async with client.stream("GET", url, headers=headers) as response:
                if not response.is_success:
                    logger.debug(f"Probe got HTTP {response.status_code}: {url}")
                    return False
                if not self._is_manifest(url, response):
                    return True

                head = b""
                async for chunk in response.aiter_bytes():
                    head += chunk
                    if len(head) >= self.MANIFEST_PEEK_BYTES:
                        break
                return head.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"#EXTM3U")


class FfprobeStreamProber(StreamProber):
    """Playability check by opening the stream with ffprobe."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT, binary: str = "ffprobe"):
        super().__init__(timeout)
        self.binary = binary

    def _build_command(self, url: str, timeout: float, referrer: Optional[str], user_agent: Optional[str]) -> list[str]:
        cmd = [
            self.binary,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-rw_timeout", str(int(timeout * 1000000)),  # microseconds
            "-user_agent", user_agent or DEFAULT_USER_AGENT,
        ]
        if referrer:
            cmd += ["-headers", f"Referer: {referrer}\r\n"]
        cmd.append(url)
        return cmd

    async def _check(self, url: str, timeout: float, referrer: Optional[str], user_agent: Optional[str]) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._build_command(url, timeout, referrer, user_agent),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.warning(f"{self.binary} not found - cannot probe {url}")
            return False

        try:
            stdout, _ = await process.communicate()
        finally:
            # Reached on timeout/cancellation too: never leave ffprobe running
            if process.returncode is None:
                process.kill()
                await process.wait()

        if process.returncode != 0 or not stdout.strip():
            return False
        data = json.loads(stdout.decode())
        return any(s.get("codec_type") in ("video", "audio") for s in data.get("streams", []))


PROBE_STRATEGIES = {
    "http": HttpStreamProber,
    "ffprobe": FfprobeStreamProber,
}


def build_prober(strategy: str = "http", timeout: float = DEFAULT_PROBE_TIMEOUT) -> StreamProber:
    """Create a prober by strategy name."""
    try:
        prober_cls = PROBE_STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown probe strategy: {strategy!r}") from None
    return prober_cls(timeout=timeout)


async def probe_channel_streams(
    prober: StreamProber,
    streams: Iterable[Stream],
    timeout: Optional[float] = None,
) -> ProbeResult:
    """Try candidate streams in order and stop at the first working one."""
    for stream in streams:
        if await prober.probe(stream.url, timeout=timeout, referrer=stream.referrer, user_agent=stream.user_agent):
            return ProbeResult(has_working=True, working_stream_urls=[stream.url])
    return ProbeResult(has_working=False, working_stream_urls=[])
