#!/usr/bin/env python3
"""
YLM (YouTube Live Monitor) Configuration and Data Model
Version: 1.0.0

Configuration handling for the live monitor:
- JSON configuration file merged over built-in defaults
- Channel list (order = priority) and OBS connection settings
- Persisted key-value state surviving restarts (current live channel marker)
"""

import os
import copy
import json
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum

# Configuration paths
DEFAULT_CONFIG_DIR = Path("/etc/ylm")
CONFIG_FILE_NAME = "config.json"

# Persisted marker key
CURRENT_LIVE_CHANNEL_KEY = "currentLiveChannelId"

DEFAULT_CONFIG = {
    "meta": {
        "version": "1.0.0",
        "created": None,
        "modified": None,
        "description": "YLM Configuration"
    },
    "system": {
        "verbose_logging": False,
        "log_level": "INFO",
        "log_file": "/var/log/ylm/ylm_main.log",
        "poll_interval": 15,
        "debounce_seconds": 30,
        "pause_file": "/tmp/ylm-pause",
        "open_request_file": "/tmp/ylm-open"
    },
    "obs": {
        "host": "localhost",
        "port": 4455,
        "password": "",
        "keepalive_interval": 10,
        "identify_timeout": None
    },
    "probe": {
        "base_url": "https://www.youtube.com",
        "lobby_recheck_delay": 15,
        "request_timeout": None,
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36",
        "accept_language": "en-US,en;q=0.9"
    },
    "viewer": {
        "enabled": True,
        "chrome_binary": None,
        "chrome_driver": None,
        "headless": False,
        "page_load_timeout": 30
    },
    "paths": {
        "state_file": "state.json",
        "status_file": "live_channels.json"
    },
    "channels": []
}


class ObsAction(Enum):
    """What OBS should do while a channel is selected."""
    NONE = "no-obs"
    STREAM = "stream"
    RECORD = "record"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "ObsAction":
        """Parse an action, accepting the legacy spellings."""
        aliases = {
            None: cls.NONE,
            "": cls.NONE,
            "none": cls.NONE,
            "no-obs": cls.NONE,
            "stream": cls.STREAM,
            "startstream": cls.STREAM,
            "record": cls.RECORD,
            "startrecord": cls.RECORD,
        }
        key = value.strip().lower() if isinstance(value, str) else value
        if key not in aliases:
            raise ValueError(f"Unknown OBS action: {value!r}")
        return aliases[key]


@dataclass(frozen=True)
class ChannelSpec:
    """A tracked channel. Identity is the channel id."""
    id: str
    display_name: str
    action: ObsAction = ObsAction.NONE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelSpec":
        display_name = data.get("display_name", data.get("displayName", ""))
        action = data.get("obs_action", data.get("obsAction", data.get("action")))
        return cls(
            id=str(data.get("id") or "").strip(),
            display_name=str(display_name or "").strip(),
            action=ObsAction.from_value(action)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "obs_action": self.action.value
        }


@dataclass(frozen=True)
class OBSSettings:
    """Where the OBS websocket server lives."""
    host: str = ""
    port: Optional[int] = None
    password: str = ""

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def is_configured(self) -> bool:
        return bool(self.host) and bool(self.port)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OBSSettings":
        port = data.get("port")
        try:
            port = int(port) if port not in (None, "") else None
        except (TypeError, ValueError):
            port = None
        return cls(
            host=str(data.get("host") or "").strip(),
            port=port,
            password=str(data.get("password") or "")
        )


@dataclass
class MonitorSettings:
    """Per-cycle snapshot of everything the settings collaborator owns."""
    channels: List[ChannelSpec] = field(default_factory=list)
    obs: OBSSettings = field(default_factory=OBSSettings)
    verbose_logging: bool = False


def get_config_dir() -> Path:
    """Config directory, overridable through YLM_CONFIG_DIR."""
    return Path(os.environ.get("YLM_CONFIG_DIR") or DEFAULT_CONFIG_DIR)


def merge_config(default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge user config with defaults."""
    result = copy.deepcopy(default)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def load_or_create_config(config_dir: Path, logger: logging.Logger) -> Dict[str, Any]:
    """Load existing configuration or create default with timestamps."""
    config_file = Path(config_dir) / CONFIG_FILE_NAME
    current_time = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())

    if config_file.exists():
        try:
            with open(config_file, 'r') as f:
                config = json.load(f)
            config = merge_config(DEFAULT_CONFIG, config)
            logger.info(f"Loaded configuration from {config_file}")
            return config
        except Exception as e:
            logger.error(f"Failed to load config: {e}. Using defaults.")
            return merge_config(DEFAULT_CONFIG, {})

    config = merge_config(DEFAULT_CONFIG, {})
    config['meta']['created'] = current_time
    config['meta']['modified'] = current_time

    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w') as f:
            json.dump(config, f, indent=4)
        logger.info(f"Created default configuration at {config_file}")
    except OSError as e:
        logger.warning(f"Could not save default configuration: {e}")

    return config


def resolve_path(config_dir: Path, value: str) -> Path:
    """Relative paths in the config are relative to the config directory."""
    path = Path(value)
    return path if path.is_absolute() else Path(config_dir) / path


class JsonSettingsStore:
    """Settings collaborator backed by config.json, re-read on every load."""

    def __init__(self, config_dir: Path, logger: logging.Logger):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / CONFIG_FILE_NAME
        self.logger = logger

    def load_config(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return merge_config(DEFAULT_CONFIG, {})
        try:
            with open(self.config_file, 'r') as f:
                return merge_config(DEFAULT_CONFIG, json.load(f))
        except Exception as e:
            self.logger.error(f"Failed to read settings from {self.config_file}: {e}")
            return merge_config(DEFAULT_CONFIG, {})

    def load(self) -> MonitorSettings:
        """Read an immutable snapshot of channels, OBS settings and verbosity."""
        config = self.load_config()

        channels = []
        for entry in config.get('channels', []):
            try:
                channels.append(ChannelSpec.from_dict(entry))
            except (ValueError, AttributeError) as e:
                self.logger.warning(f"Skipping invalid channel entry {entry!r}: {e}")

        return MonitorSettings(
            channels=channels,
            obs=OBSSettings.from_dict(config.get('obs', {})),
            verbose_logging=bool(config.get('system', {}).get('verbose_logging', False))
        )

    def save_channels(self, channels: List[ChannelSpec]):
        """Write the channel list back, keeping every other setting."""
        config = self.load_config()
        config['channels'] = [c.to_dict() for c in channels]
        config['meta']['modified'] = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())

        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(config, f, indent=4)
        self.logger.info(f"Saved {len(channels)} channels to {self.config_file}")


class JsonStateStore:
    """Small persistent key-value store kept in a JSON file."""

    def __init__(self, state_file: Path, logger: logging.Logger):
        self.state_file = Path(state_file)
        self.logger = logger

    def _read(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except Exception as e:
            self.logger.warning(f"State file {self.state_file} unreadable, starting empty: {e}")
            return {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any):
        data = self._read()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        with open(tmp_file, 'w') as f:
            json.dump(data, f, indent=4)
        os.replace(tmp_file, self.state_file)
