import json, logging, pytest
from pathlib import Path

from ylm_config import MonitorSettings, OBSSettings
from ylm_prober import LiveProbeResult
from selenium.common.exceptions import WebDriverException

from ylm_viewer import ViewerHandle, watch_url


@pytest.fixture
def safe_config_dir(tmp_path, monkeypatch):
    etc = tmp_path / "etc" / "ylm"
    etc.mkdir(parents=True)
    cfg = {
        "system": {"verbose_logging": True, "log_file": str(tmp_path / "ylm.log")},
        "obs": {"host": "127.0.0.1", "port": 4455, "password": "changeme"},
        "channels": [
            {"id": "UCaaaaaaaaaaaaaaaaaaaaaa", "display_name": "Alpha", "obs_action": "stream"},
            {"id": "UCbbbbbbbbbbbbbbbbbbbbbb", "display_name": "Bravo", "obs_action": "no-obs"}
        ]
    }
    (etc / "config.json").write_text(json.dumps(cfg, indent=2))
    monkeypatch.setenv("YLM_CONFIG_DIR", str(etc))
    return etc


@pytest.fixture
def logger():
    log = logging.getLogger("YLM-Test")
    log.setLevel(logging.DEBUG)
    return log


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeProber:
    """Answers probes from a dict of channel id -> video id (None = offline)."""

    def __init__(self, live=None):
        self.live = dict(live or {})
        self.probed = []

    async def probe(self, channel_id):
        self.probed.append(channel_id)
        video_id = self.live.get(channel_id)
        if video_id:
            return LiveProbeResult(True, video_id)
        return LiveProbeResult(False)


class FakeSettingsStore:
    def __init__(self, channels=None, obs=None, verbose=True):
        self.settings = MonitorSettings(
            channels=list(channels or []),
            obs=obs or OBSSettings("127.0.0.1", 4455, ""),
            verbose_logging=verbose
        )

    def load(self):
        return self.settings


class MemoryMarkerStore:
    def __init__(self, data=None):
        self.data = dict(data or {})
        self.writes = []

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.writes.append((key, value))
        if value is None:
            self.data.pop(key, None)
        else:
            self.data[key] = value


class RecordingSession:
    def __init__(self):
        self.calls = []

    async def update_settings(self, settings):
        self.settings = settings

    async def start_action(self, action):
        self.calls.append(("start", action))

    async def stop_all(self):
        self.calls.append(("stop",))


class RecordingViewer:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = []
        self.navigations = []
        self.current = None

    async def open_or_update(self, video_id):
        if self.fail:
            raise RuntimeError("browser crashed")
        self.opened.append(video_id)
        reused = self.current == video_id
        created = self.current is None
        if not reused:
            self.navigations.append(video_id)
        self.current = video_id
        return ViewerHandle(video_id, watch_url(video_id), created=created, reused=reused)


@pytest.fixture
def clock():
    return FakeClock()


class FakeDriver:
    """Stands in for a Chrome WebDriver window."""

    def __init__(self):
        self.url = "about:blank"
        self.visited = []
        self.dead = False
        self.quit_called = False

    @property
    def current_url(self):
        if self.dead:
            raise WebDriverException("no such window")
        return self.url

    def get(self, url):
        self.visited.append(url)
        self.url = url

    def quit(self):
        self.quit_called = True


class DriverFactory:
    def __init__(self):
        self.drivers = []

    def __call__(self):
        driver = FakeDriver()
        self.drivers.append(driver)
        return driver
