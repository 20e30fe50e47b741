#!/usr/bin/env python3
"""
YLM Viewer Routing
Version: 1.0.0

Keeps one browser window on the selected live video. The window is reused when
it already shows the target video, navigated when it shows something else and
created when no browser is alive.
"""

import asyncio
import logging
from typing import Dict, Optional, Any, Callable
from dataclasses import dataclass

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.chrome.options import Options

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


def watch_url(video_id: str) -> str:
    return WATCH_URL.format(video_id=video_id)


@dataclass(frozen=True)
class ViewerHandle:
    """Result of routing the viewer to a video."""
    video_id: str
    url: str
    created: bool = False
    reused: bool = False


class NullViewerRouter:
    """Viewer routing disabled: only logs where it would have gone."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.current_video_id: Optional[str] = None

    async def open_or_update(self, video_id: str) -> ViewerHandle:
        reused = self.current_video_id == video_id
        self.current_video_id = video_id
        self.logger.info(f"Viewer routing disabled, would show {watch_url(video_id)}")
        return ViewerHandle(video_id, watch_url(video_id), created=False, reused=reused)

    async def close(self):
        self.current_video_id = None


class SeleniumViewerRouter:
    """Routes a Chrome window (via Selenium WebDriver) to the selected video."""

    def __init__(self, config: Dict[str, Any], logger: logging.Logger,
                 driver_factory: Optional[Callable[[], Any]] = None):
        self.config = config
        self.logger = logger
        self.driver_factory = driver_factory or self.setup_webdriver
        self.driver = None

    def setup_webdriver(self):
        """Initialize a Chrome WebDriver for watching streams."""
        self.logger.info("Initializing WebDriver...")

        options = Options()
        if self.config.get('chrome_binary'):
            options.binary_location = self.config['chrome_binary']
        if self.config.get('headless'):
            options.add_argument("--headless=new")
        options.add_argument("--autoplay-policy=no-user-gesture-required")
        options.add_argument("--disable-extensions")
        options.add_argument("--log-level=3")
        options.add_experimental_option('excludeSwitches', ['enable-logging', 'enable-automation'])

        if self.config.get('chrome_driver'):
            service = Service(self.config['chrome_driver'])
        else:
            service = Service()

        driver = webdriver.Chrome(service=service, options=options)
        driver.set_page_load_timeout(self.config.get('page_load_timeout', 30))
        self.logger.info("WebDriver initialized successfully")
        return driver

    def _driver_alive(self) -> bool:
        if self.driver is None:
            return False
        try:
            self.driver.current_url
            return True
        except WebDriverException as e:
            self.logger.info(f"Viewer window is gone ({e.__class__.__name__}), will reopen")
            self.cleanup_webdriver()
            return False

    def _open_or_update(self, video_id: str) -> ViewerHandle:
        url = watch_url(video_id)

        if self._driver_alive():
            if video_id in (self.driver.current_url or ""):
                self.logger.info(f"Viewer is already on video {video_id}, no action needed")
                return ViewerHandle(video_id, url, created=False, reused=True)

            self.driver.get(url)
            self.logger.info(f"Updated viewer to video {video_id}")
            return ViewerHandle(video_id, url, created=False, reused=False)

        self.driver = self.driver_factory()
        self.driver.get(url)
        self.logger.info(f"Created viewer for URL {url}")
        return ViewerHandle(video_id, url, created=True, reused=False)

    async def open_or_update(self, video_id: str) -> ViewerHandle:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._open_or_update, video_id)

    def cleanup_webdriver(self):
        """Clean shutdown of WebDriver."""
        if self.driver:
            try:
                self.driver.quit()
                self.logger.info("WebDriver closed successfully")
            except Exception as e:
                self.logger.warning(f"WebDriver cleanup warning: {e}")
            finally:
                self.driver = None

    async def close(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.cleanup_webdriver)


def create_viewer_router(config: Dict[str, Any], logger: logging.Logger):
    if config.get('enabled', True):
        return SeleniumViewerRouter(config, logger)
    return NullViewerRouter(logger)
