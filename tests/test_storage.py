# tests/test_storage.py
import pytest

from secmon.models import SecurityAlert, SecurityEvent, SecurityEventType, Severity
from secmon.storage import SQLiteStorage


@pytest.fixture
def storage(tmp_path):
    storage = SQLiteStorage(str(tmp_path / "db" / "secmon.db"))
    storage.connect()
    storage.init_db()
    yield storage
    storage.close()


def make_event(event_id="sec_1", payload=None):
    return SecurityEvent(
        id=event_id,
        type=SecurityEventType.XSS_ATTEMPT,
        severity=Severity.HIGH,
        description="scan",
        ip_address="6.6.6.6",
        timestamp=100.0,
        payload=payload,
    )


def test_blocks_upsert_and_expire(storage):
    storage.persist_block("1.1.1.1", 50.0, "first")
    storage.persist_block("1.1.1.1", 500.0, "second")
    storage.persist_block("2.2.2.2", 150.0, "other")

    active = storage.fetch_active_blocks(now=200.0)
    assert active == [{"ip_address": "1.1.1.1", "blocked_until": 500.0, "reason": "second"}]

    assert storage.remove_block("1.1.1.1")
    assert not storage.remove_block("1.1.1.1")
    assert storage.fetch_active_blocks(now=200.0) == []


def test_alerts(storage):
    for i, severity in enumerate([Severity.HIGH, Severity.CRITICAL]):
        storage.insert_alert(SecurityAlert(
            id=f"alert_{i}", rule_id="xss_attempt", event=make_event(),
            severity=severity, message="m", timestamp=100.0 + i,
        ))

    rows = storage.fetch_alerts()
    assert [r["id"] for r in rows] == ["alert_1", "alert_0"]
    assert [r["id"] for r in storage.fetch_alerts(severity="CRITICAL")] == ["alert_1"]
    assert rows[0]["ip_address"] == "6.6.6.6"


def test_events_archive(storage):
    storage.insert_event(make_event(payload={"q": "<script>"}))
    storage.insert_event(make_event())
    assert storage.count_events() == 1


def test_unserializable_payload_raises(storage):
    with pytest.raises(TypeError):
        storage.insert_event(make_event(payload=object()))
