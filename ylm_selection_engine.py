#!/usr/bin/env python3
"""
YLM Selection Engine
Version: 1.0.0

One poll cycle across all tracked channels:
- probes channels one after another (bounded load, deterministic order)
- picks the live channel highest in the list (index 0 wins, first match wins)
- decides whether the cycle stops OBS, idles, is debounced or routes
"""

import time
import logging
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field
from enum import Enum

from ylm_config import ChannelSpec
from ylm_prober import StatusProber

DEBOUNCE_SECONDS = 30.0


class DecisionKind(Enum):
    """What the orchestrator should do with a cycle's outcome."""
    IDLE = "idle"
    STOP = "stop"
    DEBOUNCED = "debounced"
    ROUTE = "route"


@dataclass(frozen=True)
class LiveChannel:
    """A channel confirmed live during the current cycle."""
    spec: ChannelSpec
    video_id: str

    @property
    def channel_id(self) -> str:
        return self.spec.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.spec.id,
            "displayName": self.spec.display_name,
            "obsAction": self.spec.action.value,
            "videoId": self.video_id
        }


@dataclass(frozen=True)
class KnownLive:
    """Last confirmed-live state of a channel, kept for diagnostics only."""
    is_live: bool
    video_id: str


@dataclass
class CycleDecision:
    kind: DecisionKind
    selected: Optional[LiveChannel] = None
    live_channels: List[LiveChannel] = field(default_factory=list)


def select_channel(channels: List[ChannelSpec], live_channels: List[LiveChannel]) -> Optional[LiveChannel]:
    """Highest-priority live channel by list position."""
    live_by_id = {live.channel_id: live for live in live_channels}
    for channel in channels:
        if channel.id in live_by_id:
            return live_by_id[channel.id]

    # Live results that no longer match the list order
    return live_channels[0] if live_channels else None


class SelectionEngine:
    """Runs probe cycles and applies the priority/debounce policy."""

    def __init__(self, prober: StatusProber, logger: logging.Logger,
                 debounce_seconds: float = DEBOUNCE_SECONDS,
                 clock: Optional[Callable[[], float]] = None):
        self.prober = prober
        self.logger = logger
        self.debounce_seconds = debounce_seconds
        self.clock = clock or time.time
        # Never consulted by selection; only feeds the "may have ended" log
        self.last_known_status: Dict[str, KnownLive] = {}

    async def probe_channels(self, channels: List[ChannelSpec]) -> List[LiveChannel]:
        """Probe every channel sequentially, keeping list order."""
        live_channels = []
        for channel in channels:
            if not channel.id:
                self.logger.warning(f"Channel {channel.display_name} has no channel ID yet, skipping")
                continue

            result = await self.prober.probe(channel.id)
            if result.is_live and result.video_id:
                live_channels.append(LiveChannel(channel, result.video_id))
                self.last_known_status[channel.id] = KnownLive(True, result.video_id)
                self.logger.debug(
                    f"Channel {channel.display_name} ({channel.id}) is live with video ID {result.video_id}"
                )
            elif channel.id in self.last_known_status:
                self.logger.debug(f"Channel {channel.display_name} ({channel.id}) may have ended, fetch failed")
                del self.last_known_status[channel.id]
            else:
                self.logger.debug(f"Channel {channel.display_name} ({channel.id}) is not live")

        self.logger.debug(f"Found {len(live_channels)} live channels")
        return live_channels

    def decide(self, channels: List[ChannelSpec], live_channels: List[LiveChannel],
               current_channel_id: Optional[str], last_action_at: float,
               has_selection: bool) -> CycleDecision:
        """Apply the selection policy to one cycle's probe results."""
        selected = select_channel(channels, live_channels)

        if selected is None:
            if has_selection or current_channel_id:
                self.logger.info("No live channels, stopping streaming")
                return CycleDecision(DecisionKind.STOP, None, live_channels)
            self.logger.debug("No live channels")
            return CycleDecision(DecisionKind.IDLE, None, live_channels)

        now = self.clock()
        if current_channel_id == selected.channel_id and now - last_action_at < self.debounce_seconds:
            self.logger.debug(f"Tab action debounced for {selected.spec.display_name}, skipping")
            return CycleDecision(DecisionKind.DEBOUNCED, selected, live_channels)

        return CycleDecision(DecisionKind.ROUTE, selected, live_channels)

    async def run_cycle(self, channels: List[ChannelSpec], current_channel_id: Optional[str],
                        last_action_at: float, has_selection: bool) -> CycleDecision:
        self.logger.debug(f"Starting live status check for {len(channels)} channels")
        live_channels = await self.probe_channels(channels)
        return self.decide(channels, live_channels, current_channel_id, last_action_at, has_selection)
