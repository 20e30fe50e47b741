#!/usr/bin/env python3
"""
# YOUTUBE LIVE MONITOR (YLM)
# VERSION: v1.0.0
#
# Overview:
# YLM watches an ordered list of YouTube channels, keeps a browser window on the
# highest-priority channel that is live and drives OBS Studio to start or stop
# streaming/recording in step with that choice.
#
# Key Features:
# - Sequential /live page probing with waiting-lobby ("starting soon") filtering
# - Priority selection by list position with a 30 second debounce
# - Persistent, authenticated OBS WebSocket session with keepalive
# - Selenium-driven viewer window that is reused whenever possible
# - Live channel status file for external dashboards
#
# Usage:
# Configure $YLM_CONFIG_DIR/config.json (default /etc/ylm/config.json) with the
# channel list and OBS settings, then run `python3 ylm_main.py` or the `ylm`
# console script. Manual pause is supported via the configured pause file, and
# writing a video id to the open-request file opens it in the viewer.
#
# Notes:
# - Failures never stop the loop; the next poll cycle is the retry.
# - Supports graceful shutdown via SIGINT/SIGTERM signals.
"""

import sys
import time
import signal
import asyncio
import logging
from pathlib import Path
from typing import Optional

from ylm_config import (
    ChannelSpec, JsonSettingsStore, JsonStateStore, get_config_dir, load_or_create_config, resolve_path
)
from ylm_prober import StatusProber
from ylm_obs_session import OBSControllerSession
from ylm_selection_engine import SelectionEngine
from ylm_orchestrator import Orchestrator, StatusFileObserver
from ylm_viewer import create_viewer_router


class LiveMonitorApp:
    """Main YouTube Live Monitor application."""

    LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s] - %(message)s'

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.logger = logging.getLogger("YLM-Main")
        self.setup_logging()
        self.config = load_or_create_config(self.config_dir, self.logger)
        self.log_level = self.setup_log_file()
        self.exit_flag = False
        self.pause_flag = False
        self.pause_file = Path(self.config['system']['pause_file'])
        self.open_request_file = Path(self.config['system']['open_request_file'])

        self.settings_store = JsonSettingsStore(self.config_dir, self.logger)
        settings = self.settings_store.load()

        self.prober = StatusProber(self.config['probe'], self.logger)
        self.session = OBSControllerSession(
            settings.obs,
            self.logger,
            keepalive_interval=float(self.config['obs'].get('keepalive_interval', 10)),
            identify_timeout=self.config['obs'].get('identify_timeout')
        )
        self.viewer = create_viewer_router(self.config['viewer'], self.logger)
        self.engine = SelectionEngine(
            self.prober,
            self.logger,
            debounce_seconds=float(self.config['system'].get('debounce_seconds', 30))
        )
        self.orchestrator = Orchestrator(
            self.settings_store,
            JsonStateStore(resolve_path(self.config_dir, self.config['paths']['state_file']), self.logger),
            self.engine,
            self.session,
            self.viewer,
            self.logger,
            base_level=self.log_level
        )
        self.orchestrator.add_observer(
            StatusFileObserver(resolve_path(self.config_dir, self.config['paths']['status_file']))
        )

    def setup_logging(self):
        """Console logging, available before the configuration is read."""
        logging.basicConfig(
            level=logging.INFO,
            format=self.LOG_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)]
        )

        # Suppress verbose third-party logging
        logging.getLogger('websockets').setLevel(logging.WARNING)
        logging.getLogger('selenium.webdriver.remote.remote_connection').setLevel(logging.ERROR)
        logging.getLogger('selenium.webdriver.common.service').setLevel(logging.ERROR)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.ERROR)

        self.logger.info("=" * 60)
        self.logger.info("YouTube Live Monitor Starting")
        self.logger.info("=" * 60)

    def setup_log_file(self) -> int:
        """Apply the configured log level and add the file handler. Returns the level."""
        level_name = str(self.config['system'].get('log_level', 'INFO')).upper()
        level = getattr(logging, level_name, logging.INFO)
        if not isinstance(level, int):
            level = logging.INFO
        logging.getLogger().setLevel(level)

        log_file = self.config['system'].get('log_file')
        if log_file:
            try:
                Path(log_file).parent.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(log_file)
                handler.setFormatter(logging.Formatter(self.LOG_FORMAT))
                logging.getLogger().addHandler(handler)
                self.logger.info(f"Logging to {log_file}")
            except OSError as e:
                self.logger.warning(f"Cannot write log file {log_file}: {e}")

        return level

    def _signal_handler(self, sig, frame):
        """Handle shutdown signals gracefully."""
        self.logger.info(f"Received signal {sig}. Initiating shutdown...")
        self.exit_flag = True

    def check_pause_status(self) -> bool:
        """Check if manual pause is requested."""
        if self.pause_file.exists():
            if not self.pause_flag:
                self.pause_flag = True
                self.logger.info("Manual pause activated")
        elif self.pause_flag:
            self.pause_flag = False
            self.logger.info("Manual pause deactivated - resuming monitoring")
        return self.pause_flag

    async def check_open_request(self) -> bool:
        """Open the video named in the open-request file, then remove the file."""
        if not self.open_request_file.exists():
            return False

        try:
            video_id = self.open_request_file.read_text().strip()
            self.open_request_file.unlink()
        except OSError as e:
            self.logger.error(f"Failed to read open request {self.open_request_file}: {e}")
            return False

        if not video_id:
            self.logger.warning("Empty open request ignored")
            return False

        self.logger.info(f"Open requested for video {video_id}")
        try:
            await self.orchestrator.open_channel(video_id)
        except Exception as e:
            self.logger.error(f"Failed to open video {video_id}: {e}")
            return False
        return True

    async def resolve_channel_ids(self):
        """Fill in channel IDs for entries configured only by display name."""
        settings = self.settings_store.load()
        unresolved = [c for c in settings.channels if not c.id and c.display_name]
        if not unresolved:
            return

        channels = []
        for channel in settings.channels:
            if not channel.id and channel.display_name:
                channel_id = await self.prober.resolve_channel_id(channel.display_name)
                if channel_id:
                    channel = ChannelSpec(channel_id, channel.display_name, channel.action)
            channels.append(channel)

        try:
            self.settings_store.save_channels(channels)
        except OSError as e:
            self.logger.error(f"Failed to save resolved channel IDs: {e}")

    async def _sleep_until(self, deadline: float):
        while not self.exit_flag and time.monotonic() < deadline:
            await self.check_open_request()
            await asyncio.sleep(min(1.0, max(0.0, deadline - time.monotonic())))

    async def run(self) -> bool:
        """Main execution loop."""
        self.logger.info(f"Using configuration directory {self.config_dir}")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        poll_interval = float(self.config['system'].get('poll_interval', 15))

        try:
            await self.resolve_channel_ids()

            while not self.exit_flag:
                started = time.monotonic()

                if self.check_pause_status():
                    await self._sleep_until(started + 1)
                    continue

                try:
                    decision = await self.orchestrator.run_cycle()
                    self.logger.debug(f"Cycle finished: {decision.kind.value}")
                except Exception as e:
                    self.logger.error(f"Live status check failed: {e}")

                await self._sleep_until(started + poll_interval)

        except Exception as e:
            self.logger.error(f"Main loop error: {e}")
            return False

        finally:
            self.logger.info("Shutting down...")
            await self.session.close()
            await self.viewer.close()

        return True


async def main() -> int:
    """Main entry point."""
    app = LiveMonitorApp()
    success = await app.run()
    return 0 if success else 1


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logging.info("Received keyboard interrupt")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Unhandled exception: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
