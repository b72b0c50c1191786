import datetime
import io
import json
import urllib.error

import pytest

from checkin_edge.core.errors import DeliveryPermanentError, DeliveryTransientError
from checkin_edge.events import backend as backend_module
from checkin_edge.events.backend import BackendClient, SubmitResult
from checkin_edge.models.event import CheckinStatus, PendingCheckinEvent


class DummyResponse:
    def __init__(self, body: bytes = b"{}") -> None:
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self) -> bytes:
        return self.body


def _event() -> PendingCheckinEvent:
    return PendingCheckinEvent(
        event_id="evt-1",
        identity_id="A",
        slot_id="morning",
        captured_at=datetime.datetime(2026, 3, 10, 6, 30, tzinfo=datetime.timezone.utc),
        status=CheckinStatus.ON_TIME,
        device_id="KIOSK_TEST",
        confidence=70.123,
    )


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("http://backend/api/v1/checkins", code, "error", {}, io.BytesIO(b"detail"))


def test_submit_posts_payload_with_idempotency_key(monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout):
        captured["req"] = req
        captured["timeout"] = timeout
        return DummyResponse()

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    client = BackendClient("http://backend/", token="secret", timeout_sec=3)
    assert client.submit_checkin(_event()) is SubmitResult.ACCEPTED

    req = captured["req"]
    assert req.full_url == "http://backend/api/v1/checkins"
    assert req.get_method() == "POST"
    assert req.get_header("Idempotency-key") == "evt-1"
    assert req.get_header("Authorization") == "Bearer secret"
    body = json.loads(req.data.decode("utf-8"))
    assert body["event_id"] == "evt-1"
    assert body["occurred_at"] == "2026-03-10T06:30:00.000000Z"
    assert body["status"] == "on_time"
    assert body["confidence"] == 70.12
    assert captured["timeout"] == 3


def test_conflict_means_duplicate(monkeypatch):
    def fake_urlopen(req, timeout):
        raise _http_error(409)

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    assert BackendClient("http://backend").submit_checkin(_event()) is SubmitResult.DUPLICATE


@pytest.mark.parametrize("code", [500, 503, 429, 408])
def test_retryable_statuses_are_transient(monkeypatch, code):
    def fake_urlopen(req, timeout):
        raise _http_error(code)

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(DeliveryTransientError):
        BackendClient("http://backend").submit_checkin(_event())


@pytest.mark.parametrize("code", [400, 404, 422])
def test_validation_errors_are_permanent(monkeypatch, code):
    def fake_urlopen(req, timeout):
        raise _http_error(code)

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(DeliveryPermanentError) as info:
        BackendClient("http://backend").submit_checkin(_event())
    assert "detail" in str(info.value)


def test_network_errors_are_transient(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    client = BackendClient("http://backend")
    with pytest.raises(DeliveryTransientError):
        client.submit_checkin(_event())
    assert client.is_reachable() is False
    assert client.get_json("/api/v1/roster/sync") is None


def test_get_json_and_reachability(monkeypatch):
    def fake_urlopen(req, timeout):
        return DummyResponse(json.dumps({"items": []}).encode("utf-8"))

    monkeypatch.setattr(backend_module.urllib.request, "urlopen", fake_urlopen)
    client = BackendClient("http://backend")
    assert client.get_json("api/v1/roster/sync") == {"items": []}
    assert client.is_reachable() is True
