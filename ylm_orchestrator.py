#!/usr/bin/env python3
"""
YLM Orchestrator
Version: 1.0.0

Owns the cross-cycle state (current selection, last routing action) and turns
each SelectionEngine decision into viewer routing and OBS commands. After every
cycle the live channel list is pushed to observers on a best-effort basis.
"""

import json
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass

from ylm_config import CURRENT_LIVE_CHANNEL_KEY, ObsAction
from ylm_selection_engine import SelectionEngine, CycleDecision, DecisionKind, LiveChannel


@dataclass
class Selection:
    """The single channel currently chosen for viewing/recording."""
    channel_id: str
    video_id: str
    action: ObsAction


class StatusFileObserver:
    """Writes the current live channel list to a JSON file for status UIs."""

    def __init__(self, status_file: Path):
        self.status_file = Path(status_file)

    def publish(self, live_channels: List[Dict[str, Any]]):
        payload = {
            "liveChannels": live_channels,
            "updated": time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())
        }
        self.status_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.status_file, 'w') as f:
            json.dump(payload, f, indent=4)


class Orchestrator:
    """Main coordinator between selection, viewer routing and OBS."""

    def __init__(self, settings_store, marker_store, engine: SelectionEngine,
                 session, viewer, logger: logging.Logger,
                 clock: Optional[Callable[[], float]] = None,
                 base_level: int = logging.INFO):
        self.settings_store = settings_store
        self.marker_store = marker_store
        self.engine = engine
        self.session = session
        self.viewer = viewer
        self.logger = logger
        self.clock = clock or time.time
        self.base_level = base_level

        self.selection: Optional[Selection] = None
        self.last_action_at = 0.0
        self.observers: List[Any] = []

    def add_observer(self, observer):
        self.observers.append(observer)

    def apply_verbosity(self, verbose: bool):
        """Verbose settings force DEBUG; otherwise the configured log level applies."""
        self.logger.setLevel(logging.DEBUG if verbose else self.base_level)

    async def run_cycle(self) -> CycleDecision:
        """One poll tick: probe, decide, act, publish."""
        settings = self.settings_store.load()
        self.apply_verbosity(settings.verbose_logging)
        await self.session.update_settings(settings.obs)

        current_channel_id = self.marker_store.get(CURRENT_LIVE_CHANNEL_KEY)
        self.logger.debug(f"Current live channel ID from storage: {current_channel_id}")

        decision = await self.engine.run_cycle(
            settings.channels, current_channel_id, self.last_action_at, self.selection is not None
        )

        if decision.kind == DecisionKind.STOP:
            await self.session.stop_all()
            self.marker_store.set(CURRENT_LIVE_CHANNEL_KEY, None)
            self.selection = None
        elif decision.kind == DecisionKind.ROUTE:
            await self.route(decision.selected)

        self.publish(decision.live_channels)
        return decision

    async def route(self, live: LiveChannel):
        """Point the viewer and OBS at the selected channel."""
        action = live.spec.action
        current = self.selection
        same_target = (
            current is not None
            and current.channel_id == live.channel_id
            and current.video_id == live.video_id
        )

        try:
            handle = await self.viewer.open_or_update(live.video_id)
        except Exception as e:
            self.logger.error(f"Failed to route viewer to video {live.video_id}: {e}")
            return

        if same_target:
            if handle.reused:
                self.logger.debug(f"Already showing {live.spec.display_name} ({live.video_id}), no routing needed")
            else:
                self.logger.info(f"Reopened viewer for {live.spec.display_name} video {handle.video_id}")
                self.marker_store.set(CURRENT_LIVE_CHANNEL_KEY, live.channel_id)
                self.last_action_at = self.clock()

            # OBS keeps running across a reopened window; restart only on a changed action
            if current.action != action:
                current.action = action
                if action != ObsAction.NONE:
                    await self.session.start_action(action)
            return

        self.logger.info(
            f"Routed viewer to {live.spec.display_name} ({live.channel_id}) video {handle.video_id}"
        )

        self.selection = Selection(live.channel_id, live.video_id, action)
        self.marker_store.set(CURRENT_LIVE_CHANNEL_KEY, live.channel_id)
        self.last_action_at = self.clock()

        if action != ObsAction.NONE:
            await self.session.start_action(action)

    async def open_channel(self, video_id: str):
        """Open a viewer on request, outside the selection policy."""
        return await self.viewer.open_or_update(video_id)

    def publish(self, live_channels: List[LiveChannel]):
        payload = [live.to_dict() for live in live_channels]
        for observer in self.observers:
            try:
                observer.publish(payload)
                self.logger.debug(f"Sent live channel update to {observer.__class__.__name__}")
            except Exception as e:
                self.logger.debug(f"Failed to send live channel update to {observer.__class__.__name__}: {e}")
