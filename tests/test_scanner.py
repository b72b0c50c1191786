import datetime
from zoneinfo import ZoneInfo

from checkin_edge.config import ArbitrationConfig, TimeSlotConfig
from checkin_edge.policy.arbitrator import CheckinArbitrator, RejectReason
from checkin_edge.runtime.scanner import ScanBuffer, ScanKind, ScannerChannel, parse_scan_content

NOW = datetime.datetime(2026, 3, 10, 6, 30, tzinfo=ZoneInfo("UTC"))


class DummyOutbox:
    def __init__(self):
        self.events = []

    def enqueue(self, event):
        self.events.append(event)
        return event.event_id


def test_parse_scan_content():
    user = parse_scan_content("EDUCHECK_USER:STU0042")
    assert (user.kind, user.code) == (ScanKind.USER, "STU0042")

    bare = parse_scan_content("  abc123 ")
    assert (bare.kind, bare.code) == (ScanKind.USER, "abc123")

    event = parse_scan_content("https://app/checkin?event=EVT42")
    assert (event.kind, event.code) == (ScanKind.EVENT, "EVT42")

    cert = parse_scan_content("https://app/verify?code=C0FFEE")
    assert (cert.kind, cert.code) == (ScanKind.CERTIFICATE, "C0FFEE")

    assert parse_scan_content("abc").kind is ScanKind.UNKNOWN
    assert parse_scan_content("has spaces in it").kind is ScanKind.UNKNOWN


def test_scan_buffer_collects_fast_keystrokes():
    buffer = ScanBuffer(max_gap_sec=0.05)
    t = 0.0
    for ch in "STU0042":
        assert buffer.feed(ch, t) is None
        t += 0.01
    assert buffer.feed("Enter", t) == "STU0042"


def test_scan_buffer_drops_slow_typing():
    buffer = ScanBuffer(max_gap_sec=0.05)
    buffer.feed("X", 0.0)
    buffer.feed("Y", 1.0)
    t = 1.0
    for ch in "1234":
        t += 0.01
        buffer.feed(ch, t)
    # "X" was typed by hand and is discarded.
    assert buffer.feed("\n", t + 0.01) == "Y1234"
    assert buffer.feed("\r", t + 0.02) is None


def test_scan_buffer_ignores_named_keys_and_short_codes():
    buffer = ScanBuffer()
    buffer.feed("Shift", 0.0)
    buffer.feed("A", 0.0)
    buffer.feed("B", 0.01)
    assert buffer.feed("Enter", 0.02) is None


def test_scanner_channel_submits_with_full_confidence():
    outbox = DummyOutbox()
    arbitrator = CheckinArbitrator(
        ArbitrationConfig(),
        outbox,
        device_id="KIOSK_TEST",
        slots=[TimeSlotConfig(id="morning", name="Morning", start_time="06:00", end_time="07:00")],
        timezone="UTC",
    )
    codes = {"STU0042": "u42"}
    channel = ScannerChannel(arbitrator, codes.get)

    outcome = channel.handle_scan("EDUCHECK_USER:STU0042", now=NOW)
    assert outcome.identity_id == "u42"
    assert outcome.decision.accepted is True
    event = outbox.events[0]
    assert event.confidence == 100.0
    assert event.source == "scan"

    again = channel.handle_scan("STU0042", now=NOW)
    assert again.decision.reason is RejectReason.ALREADY_CHECKED_IN

    unknown = channel.handle_scan("EDUCHECK_USER:NOPE99", now=NOW)
    assert unknown.identity_id is None
    assert unknown.decision is None

    ignored = channel.handle_scan("https://app/verify?code=C0FFEE", now=NOW)
    assert ignored.decision is None
    assert len(outbox.events) == 1
