"""
Configuration loading for enrollment sync.

Settings come from a JSON config file (``--config`` / ``CONFIG_PATH``) and are
then overridden by environment variables for secrets and deployment values:

    DIGEST_USERNAME, DIGEST_PASSWORD   device digest credentials
    DEVICE_IPS / FACE_READER_IPS       comma-separated device addresses
    REDIS_URL                          optional key-value mirror
    ROSTER_URL / ROSTER_PATH           upstream roster source
    EVENT_ID                           roster scope
    SCHEDULER_INTERVAL_MINUTES         scheduler cadence
    CACHE_DIR                          root of all persisted state
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .device_client import DeviceClientConfig
from .image_utils import ImageEnvelope

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/enrollment_sync.json"


class ConfigError(ValueError):
    """Raised when the configuration is incomplete or invalid."""


@dataclass
class SyncConfig:
    """Top-level configuration for one enrollment sync deployment."""
    devices: List[str] = field(default_factory=list)
    device: DeviceClientConfig = field(default_factory=DeviceClientConfig)
    envelope: ImageEnvelope = field(default_factory=ImageEnvelope)

    # Persisted state
    cache_dir: str = "cache"
    max_backups: int = 10
    redis_url: Optional[str] = None

    # Photo download
    download_timeout_seconds: int = 30

    # Reconciliation
    chunk_size: int = 10
    delete_pause_seconds: float = 0.2
    settle_seconds: float = 2.0
    face_phase_delay_seconds: float = 3.0

    # Upstream roster
    roster_url: Optional[str] = None
    roster_path: Optional[str] = None
    event_id: Optional[str] = None
    incremental: bool = False

    # Orchestration
    isolation: str = "thread"
    max_workers: Optional[int] = None
    device_timeout_seconds: float = 900.0

    # Scheduler
    interval_minutes: float = 5.0
    run_immediately: bool = True
    lock_path: str = ".enrollment-sync.lock"
    lock_max_age_minutes: float = 30.0

    # Logging
    service_id: str = "enrollment-sync"
    log_dir: str = "logs"
    json_logs: bool = True

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir)

    def validate(self) -> None:
        """Raise ConfigError if the config cannot drive a sync cycle."""
        if not self.devices:
            raise ConfigError("No devices configured (set 'devices' or DEVICE_IPS)")
        if not self.device.username or not self.device.password:
            raise ConfigError("Digest credentials missing (DIGEST_USERNAME / DIGEST_PASSWORD)")
        if not 1 <= self.chunk_size <= 10:
            raise ConfigError(f"chunk_size must be between 1 and 10, got {self.chunk_size}")
        if self.isolation not in ("thread", "process"):
            raise ConfigError(f"isolation must be 'thread' or 'process', got {self.isolation!r}")
        if self.roster_url and self.roster_path:
            raise ConfigError("Configure either roster_url or roster_path, not both")


def _split_devices(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _build_section(cls, data: Mapping):
    """Build a dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


def config_from_dict(data: Mapping) -> SyncConfig:
    """Build a SyncConfig from a parsed JSON document."""
    data = dict(data)
    device = _build_section(DeviceClientConfig, data.pop("device", {}) or {})
    envelope = _build_section(ImageEnvelope, data.pop("envelope", {}) or {})

    devices = data.pop("devices", [])
    if isinstance(devices, str):
        devices = _split_devices(devices)

    config = _build_section(SyncConfig, data)
    config.device = device
    config.envelope = envelope
    config.devices = list(devices)
    return config


def apply_env_overrides(config: SyncConfig, env: Mapping[str, str]) -> SyncConfig:
    """Overlay environment variables onto a config."""
    if env.get("DIGEST_USERNAME"):
        config.device.username = env["DIGEST_USERNAME"]
    if env.get("DIGEST_PASSWORD"):
        config.device.password = env["DIGEST_PASSWORD"]

    device_ips = env.get("DEVICE_IPS") or env.get("FACE_READER_IPS")
    if device_ips:
        config.devices = _split_devices(device_ips)

    if env.get("REDIS_URL"):
        config.redis_url = env["REDIS_URL"]
    if env.get("ROSTER_URL"):
        config.roster_url = env["ROSTER_URL"]
        config.roster_path = None
    if env.get("ROSTER_PATH"):
        config.roster_path = env["ROSTER_PATH"]
        config.roster_url = None
    if env.get("EVENT_ID"):
        config.event_id = env["EVENT_ID"]
    if env.get("CACHE_DIR"):
        config.cache_dir = env["CACHE_DIR"]

    interval = env.get("SCHEDULER_INTERVAL_MINUTES")
    if interval:
        try:
            config.interval_minutes = float(interval)
        except ValueError:
            raise ConfigError(f"SCHEDULER_INTERVAL_MINUTES is not a number: {interval!r}")

    return config


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    validate: bool = True,
) -> SyncConfig:
    """
    Load configuration from a JSON file plus environment overrides.

    Args:
        path: Config file path (default: CONFIG_PATH or DEFAULT_CONFIG_PATH).
              A missing file is allowed; env vars then carry the whole config.
        env: Environment mapping (default: os.environ)
        validate: Raise ConfigError when the result is unusable

    Returns:
        SyncConfig
    """
    env = os.environ if env is None else env
    path = path or env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)

    data: Dict = {}
    config_file = Path(path)
    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_file}: {e}")
        logger.debug(f"Loaded config file: {config_file}")
    else:
        logger.info(f"Config file not found, using defaults + environment: {config_file}")

    config = apply_env_overrides(config_from_dict(data), env)

    if validate:
        config.validate()
    return config
