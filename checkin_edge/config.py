"""
Configuration loading for the check-in edge node.

This module provides a Settings class that loads configuration data
from a YAML file located on disk and allows overrides via environment
variables. Environment variables take precedence over values defined
in the YAML configuration. ``config/checkin_edge.yaml`` is a sample.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml

from .core.errors import ConfigError

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class TimeSlotConfig:
    """A named time-of-day window during which check-ins are accepted."""
    id: str
    name: str
    start_time: str
    end_time: str
    is_active: bool = True


@dataclass
class MatcherConfig:
    """Embedding matcher tuning. ``threshold`` is on the 0..100 scale."""
    threshold: float = 60.0
    # Unit-norm 512-d ArcFace embeddings: Euclidean distance spans 0..2.
    max_distance: float = 2.0
    embedding_dim: Optional[int] = 512


@dataclass
class StabilityConfig:
    """How long and how well a face must match before it is confirmed."""
    min_confidence: float = 45.0
    threshold_ms: int = 500
    min_face_ratio: float = 0.2
    max_face_ratio: float = 0.65


@dataclass
class ArbitrationConfig:
    """Check-in policy knobs."""
    grace_minutes: int = 15
    min_cooldown_sec: int = 60
    failure_cooldown_sec: int = 5


@dataclass
class LoopConfig:
    """Detection loop pacing and camera selection."""
    camera_source: str = "0"
    min_interval_online_ms: int = 150
    min_interval_offline_ms: int = 300
    extract_timeout_sec: float = 2.0


@dataclass
class SyncConfig:
    """Backend connectivity, roster refresh and status API settings."""
    backend_url: str = "http://127.0.0.1:8001"
    backend_token: Optional[str] = None
    request_timeout_sec: float = 5.0
    connectivity_probe_sec: float = 10.0
    roster_sync_interval_sec: int = 300
    roster_cache_dir: str = "data/roster"
    status_api_host: str = "127.0.0.1"
    status_api_port: int = 19100


@dataclass
class MqttConfig:
    """Optional broker for status heartbeats. Disabled while ``host`` is unset."""
    host: Optional[str] = None
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    heartbeat_interval_sec: int = 30


@dataclass
class Settings:
    """
    Application settings loaded from YAML and environment variables.

    Parameters are typed for convenience. Backend parameters may be
    overridden via environment variables using the names listed in
    ``load_settings``.
    """

    device_id: str
    timezone: str
    slots: List[TimeSlotConfig] = field(default_factory=list)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    arbitration: ArbitrationConfig = field(default_factory=ArbitrationConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)


def _load_yaml_file(config_path: Path) -> dict:
    """Load a YAML configuration file and return a dictionary."""
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file {config_path!s} not found")
    with config_path.open('r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def _section(cls, raw: object, name: str):
    """Build a section dataclass, ignoring unknown keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logging.getLogger("config").warning("Ignoring unknown keys in '%s': %s", name, ", ".join(unknown))
    try:
        return cls(**{k: v for k, v in raw.items() if k in known})
    except TypeError as exc:
        raise ConfigError(f"Invalid section '{name}': {exc}") from exc


def is_valid_time_string(value: object) -> bool:
    return isinstance(value, str) and bool(_TIME_RE.match(value.strip()))


def parse_slots(raw: object) -> List[TimeSlotConfig]:
    """Parse the ``slots`` list; malformed entries are skipped with a warning."""
    logger = logging.getLogger("config")
    slots: List[TimeSlotConfig] = []
    if not isinstance(raw, list):
        return slots
    for item in raw:
        if not isinstance(item, dict):
            logger.warning("Skipping slot entry that is not a mapping: %r", item)
            continue
        start = item.get("start_time")
        end = item.get("end_time")
        slot_id = item.get("id")
        if not slot_id or not is_valid_time_string(start) or not is_valid_time_string(end):
            logger.warning("Skipping malformed slot entry: %r", item)
            continue
        slots.append(TimeSlotConfig(
            id=str(slot_id),
            name=str(item.get("name") or slot_id),
            start_time=str(start).strip(),
            end_time=str(end).strip(),
            is_active=bool(item.get("is_active", True)),
        ))
    return slots


def load_settings(config_path: str) -> Settings:
    """
    Load settings from a YAML file and environment variables.

    Environment variable overrides:

    - ``CHECKIN_DEVICE_ID`` overrides ``device_id``
    - ``CHECKIN_TIMEZONE`` overrides ``timezone``
    - ``CHECKIN_BACKEND_URL`` overrides ``sync.backend_url``
    - ``CHECKIN_BACKEND_TOKEN`` provides the backend bearer token
    - ``CHECKIN_MATCH_THRESHOLD`` overrides ``matcher.threshold``
    - ``CHECKIN_CAMERA_SOURCE`` overrides ``loop.camera_source``
    - ``MQTT_BROKER_HOST``, ``MQTT_BROKER_PORT``, ``MQTT_USERNAME`` and
      ``MQTT_PASSWORD`` override the ``mqtt`` section

    Parameters
    ----------
    config_path: str
        Path to the YAML configuration file.

    Returns
    -------
    Settings
        A Settings instance with configuration and environment overrides applied.
    """
    path = Path(config_path)
    data = _load_yaml_file(path)

    device_id = os.getenv('CHECKIN_DEVICE_ID', data.get('device_id'))
    if not device_id:
        raise ConfigError("device_id is required (set it in YAML or CHECKIN_DEVICE_ID)")
    timezone = os.getenv('CHECKIN_TIMEZONE', data.get('timezone', 'UTC'))

    matcher = _section(MatcherConfig, data.get('matcher'), 'matcher')
    threshold_env = os.getenv('CHECKIN_MATCH_THRESHOLD')
    if threshold_env:
        try:
            matcher.threshold = float(threshold_env)
        except ValueError as exc:
            raise ConfigError(f"CHECKIN_MATCH_THRESHOLD is not a number: {threshold_env!r}") from exc
    if not 0 <= matcher.threshold <= 100:
        raise ConfigError(f"matcher.threshold must be within 0..100, got {matcher.threshold}")

    stability = _section(StabilityConfig, data.get('stability'), 'stability')
    if stability.min_face_ratio > stability.max_face_ratio:
        raise ConfigError("stability.min_face_ratio must not exceed stability.max_face_ratio")

    loop = _section(LoopConfig, data.get('loop'), 'loop')
    loop.camera_source = str(os.getenv('CHECKIN_CAMERA_SOURCE', loop.camera_source))

    sync = _section(SyncConfig, data.get('sync'), 'sync')
    sync.backend_url = os.getenv('CHECKIN_BACKEND_URL', sync.backend_url)
    sync.backend_token = os.getenv('CHECKIN_BACKEND_TOKEN', sync.backend_token)

    mqtt_cfg = _section(MqttConfig, data.get('mqtt'), 'mqtt')
    mqtt_cfg.host = os.getenv('MQTT_BROKER_HOST', mqtt_cfg.host)
    mqtt_cfg.port = int(os.getenv('MQTT_BROKER_PORT', mqtt_cfg.port))
    mqtt_cfg.username = os.getenv('MQTT_USERNAME', mqtt_cfg.username)
    mqtt_cfg.password = os.getenv('MQTT_PASSWORD', mqtt_cfg.password)

    return Settings(
        device_id=str(device_id),
        timezone=str(timezone),
        slots=parse_slots(data.get('slots', [])),
        matcher=matcher,
        stability=stability,
        arbitration=_section(ArbitrationConfig, data.get('arbitration'), 'arbitration'),
        loop=loop,
        sync=sync,
        mqtt=mqtt_cfg,
    )


__all__ = [
    'TimeSlotConfig',
    'MatcherConfig',
    'StabilityConfig',
    'ArbitrationConfig',
    'LoopConfig',
    'SyncConfig',
    'MqttConfig',
    'Settings',
    'is_valid_time_string',
    'parse_slots',
    'load_settings',
]
