#!/usr/bin/env python3
"""
YLM Live Status Prober
Version: 1.0.0

Scrapes a channel's /live page and decides whether it is actually broadcasting.

The /live page looks almost identical while a stream sits in its "starting soon"
waiting lobby. Three markers are read from the page: the up-next player widget,
scheduled/upcoming event data and the DVR flag. A lobby shows up-next or
scheduled data without DVR; a lobby gets one recheck after a fixed delay before
the channel is reported as not live.
"""

import re
import asyncio
import logging
from typing import Dict, Any, Optional, Callable, Awaitable
from dataclasses import dataclass
from urllib.parse import urlparse, parse_qs

import aiohttp
from bs4 import BeautifulSoup

# Page markers
LIVE_MARKER = '"isLive":true'
UP_NEXT_MARKER = 'ytp-upnext'
SCHEDULED_MARKERS = ('"scheduledStartTime"', '"upcomingEventData"')
DVR_MARKER = '"isLiveDvrEnabled":true'

LOBBY_RECHECK_DELAY = 15.0

CHANNEL_ID_PATTERN = re.compile(r'^UC[\w-]{22}$')
CHANNEL_PATH_PATTERN = re.compile(r'^/channel/(UC[\w-]{22})/?$')

PageFetcher = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class LiveProbeResult:
    """Outcome of one live probe."""
    is_live: bool
    video_id: Optional[str] = None


NOT_LIVE = LiveProbeResult(is_live=False)


@dataclass(frozen=True)
class LobbySignals:
    """Waiting-lobby indicators found in a /live page."""
    up_next: bool
    scheduled: bool
    dvr: bool

    @property
    def is_waiting_lobby(self) -> bool:
        return (self.up_next or self.scheduled) and not self.dvr


def classify_page(html: str) -> LobbySignals:
    """Read the three lobby markers from a page."""
    return LobbySignals(
        up_next=UP_NEXT_MARKER in html,
        scheduled=any(marker in html for marker in SCHEDULED_MARKERS),
        dvr=DVR_MARKER in html
    )


def has_live_marker(html: str) -> bool:
    return LIVE_MARKER in html


def _canonical_href(html: str) -> Optional[str]:
    soup = BeautifulSoup(html, 'html.parser')
    link = soup.find('link', rel='canonical')
    if link is None:
        return None
    return link.get('href')


def extract_video_id(html: str) -> Optional[str]:
    """Video id from the canonical watch link, None when absent."""
    href = _canonical_href(html)
    if not href:
        return None

    parsed = urlparse(href)
    if not parsed.netloc.endswith('youtube.com') or parsed.path != '/watch':
        return None

    video_ids = parse_qs(parsed.query).get('v')
    if not video_ids or not video_ids[0]:
        return None
    return video_ids[0]


def extract_channel_id(html: str) -> Optional[str]:
    """Channel id from the canonical /channel/UC... link of a handle page."""
    href = _canonical_href(html)
    if not href:
        return None

    parsed = urlparse(href)
    if not parsed.netloc.endswith('youtube.com'):
        return None

    match = CHANNEL_PATH_PATTERN.match(parsed.path)
    return match.group(1) if match else None


def is_channel_id(text: str) -> bool:
    return bool(CHANNEL_ID_PATTERN.match(text or ''))


class StatusProber:
    """Probes YouTube channels for a confirmed live stream."""

    def __init__(self, config: Dict[str, Any], logger: logging.Logger,
                 fetch_page: Optional[PageFetcher] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self.config = config
        self.logger = logger
        self.base_url = config.get('base_url', 'https://www.youtube.com').rstrip('/')
        self.recheck_delay = float(config.get('lobby_recheck_delay', LOBBY_RECHECK_DELAY))
        self.fetch_page = fetch_page or self._fetch_page
        self.sleep = sleep or asyncio.sleep

    def live_url(self, channel_id: str) -> str:
        return f"{self.base_url}/channel/{channel_id}/live"

    async def _fetch_page(self, url: str) -> str:
        """GET a page and return its body. Raises on transport or HTTP errors."""
        headers = {}
        if self.config.get('user_agent'):
            headers['User-Agent'] = self.config['user_agent']
        if self.config.get('accept_language'):
            headers['Accept-Language'] = self.config['accept_language']

        request_timeout = self.config.get('request_timeout')
        timeout = aiohttp.ClientTimeout(total=request_timeout) if request_timeout else None

        kwargs = {'headers': headers}
        if timeout is not None:
            kwargs['timeout'] = timeout

        async with aiohttp.ClientSession(**kwargs) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()

    async def probe(self, channel_id: str) -> LiveProbeResult:
        """Check one channel. Never raises; failures mean not live."""
        url = self.live_url(channel_id)
        self.logger.debug(f"Fetching live status for channel {channel_id}: {url}")

        try:
            html = await self.fetch_page(url)
            self.logger.debug(f"Fetched /live page for channel {channel_id}")

            if not has_live_marker(html):
                self.logger.debug(f"No live stream detected for channel {channel_id}")
                return NOT_LIVE

            video_id = extract_video_id(html)
            if not video_id:
                self.logger.debug(f"Live stream detected but no video ID found for channel {channel_id}")
                return NOT_LIVE

            self.logger.debug(f"Found video ID {video_id} for channel {channel_id}")

            signals = classify_page(html)
            if not signals.is_waiting_lobby:
                self.logger.debug(f"Live stream confirmed for channel {channel_id} with video ID {video_id}")
                return LiveProbeResult(is_live=True, video_id=video_id)

            self.logger.debug(
                f"Waiting lobby detected for channel {channel_id} with indicators: "
                f"ytp-upnext={signals.up_next}, scheduled={signals.scheduled}, dvr={signals.dvr}"
            )
            return await self._recheck_lobby(channel_id, url, video_id)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.debug(f"Error checking live status for {channel_id}: {e}")
            return NOT_LIVE

    async def _recheck_lobby(self, channel_id: str, url: str, video_id: str) -> LiveProbeResult:
        await self.sleep(self.recheck_delay)

        html = await self.fetch_page(url)
        signals = classify_page(html)
        if signals.is_waiting_lobby:
            self.logger.debug(f"Recheck confirmed waiting lobby for channel {channel_id}")
            return NOT_LIVE

        self.logger.debug(f"Recheck detected live stream for channel {channel_id} with video ID {video_id}")
        return LiveProbeResult(is_live=True, video_id=video_id)

    async def resolve_channel_id(self, display_name: str) -> Optional[str]:
        """Look up the UC... channel id behind an @handle."""
        handle = (display_name or '').strip().lstrip('@')
        if not handle:
            return None
        if is_channel_id(handle):
            return handle

        url = f"{self.base_url}/@{handle}"
        try:
            html = await self.fetch_page(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Error fetching channel page for {display_name}: {e}")
            return None

        channel_id = extract_channel_id(html)
        if channel_id:
            self.logger.info(f"Resolved {display_name} to channel {channel_id}")
        else:
            self.logger.warning(f"Could not find channel ID for {display_name}")
        return channel_id
