import os
import shutil
import textwrap

import pytest

from checkin_edge.config import load_settings
from checkin_edge.core.errors import ConfigError

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SAMPLE_CONFIG = os.path.join(PROJECT_ROOT, 'config', 'checkin_edge.yaml')

ENV_KEYS = [
    "CHECKIN_DEVICE_ID",
    "CHECKIN_TIMEZONE",
    "CHECKIN_BACKEND_URL",
    "CHECKIN_BACKEND_TOKEN",
    "CHECKIN_MATCH_THRESHOLD",
    "CHECKIN_CAMERA_SOURCE",
    "MQTT_BROKER_HOST",
    "MQTT_BROKER_PORT",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_load_sample_settings(tmp_path):
    tmp_config = tmp_path / 'config.yaml'
    shutil.copy(SAMPLE_CONFIG, tmp_config)
    settings = load_settings(str(tmp_config))
    assert settings.device_id == 'KIOSK_01'
    assert settings.timezone == 'Asia/Ho_Chi_Minh'
    assert [s.id for s in settings.slots] == ['morning', 'noon', 'evening', 'late_study']
    assert settings.slots[-1].is_active is False
    assert settings.matcher.threshold == 60
    assert settings.stability.threshold_ms == 500
    assert settings.arbitration.grace_minutes == 15
    assert settings.sync.status_api_port == 19100
    assert settings.mqtt.host is None


def test_env_overrides(tmp_path, monkeypatch):
    tmp_config = tmp_path / 'config.yaml'
    shutil.copy(SAMPLE_CONFIG, tmp_config)
    monkeypatch.setenv("CHECKIN_DEVICE_ID", "KIOSK_99")
    monkeypatch.setenv("CHECKIN_BACKEND_URL", "http://backend:9000")
    monkeypatch.setenv("CHECKIN_BACKEND_TOKEN", "tok")
    monkeypatch.setenv("CHECKIN_MATCH_THRESHOLD", "72.5")
    monkeypatch.setenv("CHECKIN_CAMERA_SOURCE", "rtsp://cam/1")
    monkeypatch.setenv("MQTT_BROKER_HOST", "broker.local")
    settings = load_settings(str(tmp_config))
    assert settings.device_id == "KIOSK_99"
    assert settings.sync.backend_url == "http://backend:9000"
    assert settings.sync.backend_token == "tok"
    assert settings.matcher.threshold == 72.5
    assert settings.loop.camera_source == "rtsp://cam/1"
    assert settings.mqtt.host == "broker.local"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "missing.yaml"))


def test_device_id_required(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("timezone: UTC\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(str(path))


def test_malformed_slots_are_skipped(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(textwrap.dedent("""
        device_id: KIOSK_T
        slots:
          - id: ok
            start_time: "08:00"
            end_time: "09:00"
          - id: bad_time
            start_time: "8am"
            end_time: "09:00"
          - just a string
          - start_time: "10:00"
            end_time: "11:00"
    """), encoding="utf-8")
    settings = load_settings(str(path))
    assert [s.id for s in settings.slots] == ["ok"]
    assert settings.slots[0].name == "ok"
    assert settings.timezone == "UTC"


def test_invalid_values_raise(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("device_id: K\nmatcher:\n  threshold: 150\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(str(path))

    path.write_text("device_id: K\nstability:\n  min_face_ratio: 0.8\n  max_face_ratio: 0.5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(str(path))

    path.write_text("device_id: K\nloop: 5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(str(path))


def test_sample_matcher_fits_default_face_model(tmp_path):
    from checkin_edge.cv.face_id import InsightFaceExtractor
    from checkin_edge.cv.matcher import EmbeddingMatcher, EnrolledIdentity

    tmp_config = tmp_path / 'config.yaml'
    shutil.copy(SAMPLE_CONFIG, tmp_config)
    settings = load_settings(str(tmp_config))
    assert settings.matcher.embedding_dim == InsightFaceExtractor().embedding_dim == 512

    matcher = EmbeddingMatcher(
        max_distance=settings.matcher.max_distance,
        embedding_dim=settings.matcher.embedding_dim,
    )
    unit = [0.0] * 512
    unit[0] = 1.0
    assert matcher.replace_all([EnrolledIdentity(id="A", display_name="Alice", embedding=tuple(unit))]) == 1
    assert matcher.find_match(unit, settings.matcher.threshold).id == "A"
