# tests/test_monitor.py
import threading

import pytest

from secmon import evaluators
from secmon.config import MonitorConfig
from secmon.models import SecurityEventType as ET, SecurityRule, Severity
from secmon.monitor import SecurityMonitor


def fail_login(monitor, ip, user):
    return monitor.record_event(ET.LOGIN_FAILURE, Severity.MEDIUM, "bad password", ip, user_id=user)


def test_account_enumeration_end_to_end(monitor, clock):
    for i in range(11):
        fail_login(monitor, "1.2.3.4", f"user{i}")
        clock.advance(10)

    assert monitor.is_ip_blocked("1.2.3.4")
    info = monitor.get_ip_info("1.2.3.4")
    assert info.blocked_until == clock.now - 10 + 3600

    alerts = monitor.get_security_alerts(rule_id="account_enumeration")
    assert len(alerts) == 2
    assert all(a.severity == Severity.HIGH for a in alerts)


def test_sql_injection_end_to_end(monitor, clock, session):
    event = monitor.record_event(
        ET.INJECTION_ATTEMPT, Severity.HIGH, "suspicious query", "6.6.6.6",
        endpoint="/api/search", payload="name=' OR 1=1 --",
    )

    info = monitor.get_ip_info("6.6.6.6")
    assert info.blocked_until == event.timestamp + 7200
    alerts = monitor.get_security_alerts()
    assert [(a.rule_id, a.severity) for a in alerts] == [("sql_injection_attempt", Severity.CRITICAL)]

    monitor.notifier.process_pending()
    urls = [p["url"] for p in session.posts]
    assert "http://alerts.test/hook" in urls
    assert "http://chat.test/hook" in urls
    assert "http://blocks.test/persist" in urls


def test_five_failures_block_ip_until_expiry(monitor, clock):
    for i in range(5):
        fail_login(monitor, "5.5.5.5", f"u{i}")

    assert monitor.is_ip_blocked("5.5.5.5")
    clock.advance(3599)
    assert monitor.is_ip_blocked("5.5.5.5")
    clock.advance(1)
    assert not monitor.is_ip_blocked("5.5.5.5")
    assert not monitor.get_ip_info("5.5.5.5").is_blocked


def test_user_lock_expires_lazily(monitor, clock):
    for i in range(5):
        fail_login(monitor, f"10.0.0.{i}", "bob")

    assert monitor.is_user_locked("bob")
    clock.advance(1800)
    assert not monitor.is_user_locked("bob")
    assert monitor.get_user_profile("bob").failed_login_attempts == 0


def test_login_success_lowers_failed_counter(monitor):
    fail_login(monitor, "3.3.3.3", "amy")
    fail_login(monitor, "3.3.3.3", "amy")
    monitor.record_event(ET.LOGIN_SUCCESS, Severity.LOW, "ok", "3.3.3.3", user_id="amy")

    info = monitor.get_ip_info("3.3.3.3")
    assert info.failed_logins == 1
    assert info.risk_score == 15
    assert monitor.get_user_profile("amy").failed_login_attempts == 0


def test_priority_zero_acts_before_priority_one(monitor, session):
    seen = []

    @evaluators.register_action("test_observe_block")
    def observe(engine, rule, event, context, params):
        seen.append((event.ip_address in context.blocked_ips,
                     engine.store.get_ip_info(event.ip_address).is_blocked))

    try:
        monitor.add_rule(SecurityRule(
            id="observer", name="Observer", type=ET.INJECTION_ATTEMPT,
            condition="payload_contains", action="test_observe_block", priority=1,
            params={"patterns": ["or 1=1"]},
        ))
        monitor.record_event(ET.INJECTION_ATTEMPT, Severity.HIGH, "scan", "6.6.6.7",
                             payload="' OR 1=1")
    finally:
        evaluators.ACTIONS.pop("test_observe_block", None)

    assert seen == [(True, True)]
    monitor.notifier.process_pending()
    assert [p["url"] for p in session.posts].count("http://blocks.test/persist") == 1


def test_rule_failure_fails_open(monitor, monkeypatch):
    def explode(event, context):
        raise RuntimeError("engine down")

    monkeypatch.setattr(monitor.engine, "evaluate_rules", explode)
    event = monitor.record_event(ET.INJECTION_ATTEMPT, Severity.HIGH, "scan", "6.6.6.8",
                                 payload="' OR 1=1")

    assert event is not None
    assert monitor.get_events_by_ip("6.6.6.8") == [event]
    assert not monitor.is_ip_blocked("6.6.6.8")


def test_disabled_monitor_records_nothing(notifier, clock):
    monitor = SecurityMonitor(MonitorConfig(enabled=False), notifier=notifier, clock=clock)
    assert fail_login(monitor, "1.1.1.1", "x") is None
    assert monitor.search_events() == []


def test_unknown_event_type_is_ignored(monitor):
    assert monitor.record_event("port_scan", "high", "?", "1.1.1.1") is None
    assert monitor.record_event("login_failure", "extreme", "?", "1.1.1.1") is None
    assert monitor.search_events() == []


def test_string_event_types_are_accepted(monitor):
    event = monitor.record_event("login_failure", "medium", "bad password", "1.1.1.1")
    assert event.type == ET.LOGIN_FAILURE


def test_check_request(monitor):
    assert monitor.check_request("4.4.4.4", endpoint="/api/items", method="GET")
    assert monitor.get_events_by_ip("4.4.4.4")[0].type == ET.DATA_ACCESS

    monitor.block_ip("4.4.4.4", duration=60, reason="manual")
    assert not monitor.check_request("4.4.4.4", endpoint="/api/items", method="GET")
    assert len(monitor.get_events_by_ip("4.4.4.4")) == 1


def test_manual_block_and_lock(monitor, clock):
    until = monitor.block_ip("9.9.9.9", duration=60)
    assert until == clock.now + 60
    assert monitor.is_ip_blocked("9.9.9.9")
    assert monitor.unblock_ip("9.9.9.9")
    assert not monitor.unblock_ip("9.9.9.9")
    assert not monitor.is_ip_blocked("9.9.9.9")

    monitor.lock_user("zed")
    assert monitor.is_user_locked("zed")
    assert monitor.unlock_user("zed")
    assert not monitor.is_user_locked("zed")


def test_threat_analysis_pass_throughs(monitor):
    assert monitor.analyze_ip_threat("0.0.0.0") is None
    assert monitor.analyze_user_threat("nobody") is None

    for i in range(12):
        fail_login(monitor, "2.2.2.2", "victim")

    ip_assessment = monitor.analyze_ip_threat("2.2.2.2")
    assert "Detected attack pattern: Brute Force Login Attack" in ip_assessment.factors
    user_assessment = monitor.analyze_user_threat("victim")
    assert "Lock account temporarily" in user_assessment.immediate_actions

    report = monitor.generate_threat_report()
    assert report["top_threats"]["ips"][0]["ip"] == "2.2.2.2"


def test_security_statistics(monitor):
    for i in range(5):
        fail_login(monitor, "5.5.5.5", f"u{i}")
    monitor.record_event(ET.DATA_ACCESS, Severity.LOW, "read", "8.8.8.8")

    stats = monitor.get_security_statistics()
    assert stats["total_events"] == 6
    assert stats["blocked_ips"] == 1
    assert stats["alerts_by_rule"] == {"multiple_failed_logins": 1}
    assert stats["top_risky_ips"][0].ip_address == "5.5.5.5"
    assert len(stats["recent_events"]) == 6
    # 5.5.5.5 at 50 (medium), 8.8.8.8 at 0, five users at 15 each
    assert stats["risk_distribution"] == {
        "none": 6, "low": 0, "medium": 1, "high": 0, "critical": 0,
    }


def test_alert_management(monitor):
    monitor.record_event(ET.XSS_ATTEMPT, Severity.HIGH, "scan", "7.7.7.7", payload="<script>")
    alert = monitor.get_security_alerts()[0]

    assert monitor.acknowledge_alert(alert.id, "analyst")
    assert not monitor.acknowledge_alert(alert.id, "analyst")
    assert monitor.resolve_alert(alert.id, "analyst")
    assert monitor.get_security_alerts(resolved=False) == []


def test_rule_management(monitor):
    assert len(monitor.get_all_rules()) == 7
    assert monitor.set_rule_enabled("xss_attempt", False)
    monitor.record_event(ET.XSS_ATTEMPT, Severity.HIGH, "scan", "7.7.7.7", payload="<script>")
    assert monitor.get_security_alerts() == []
    assert monitor.remove_rule("xss_attempt")
    assert monitor.get_rule("xss_attempt") is None


def test_export_import_round_trip(monitor, notifier, clock, config):
    fail_login(monitor, "1.1.1.1", "a")
    monitor.record_event(ET.LOGIN_SUCCESS, Severity.LOW, "ok", "1.1.1.1", user_id="a")
    monitor.record_event(ET.XSS_ATTEMPT, Severity.HIGH, "scan", "2.2.2.2", payload="<script>")
    monitor.set_rule_enabled("rapid_requests", False)

    data = monitor.export_data()
    assert data["statistics"]["total_events"] == 3

    fresh = SecurityMonitor(config, notifier=notifier, clock=clock)
    fresh.import_data(data)

    assert fresh.store.export_data() == monitor.store.export_data()
    assert fresh.engine.export_data() == monitor.engine.export_data()
    assert not fresh.get_rule("rapid_requests").enabled


def test_failed_import_changes_nothing(monitor, notifier, clock, config):
    fail_login(monitor, "1.1.1.1", "a")
    data = monitor.export_data()
    data["events"] = []
    data["rules"][0]["condition"] = "not_registered"

    fresh = SecurityMonitor(config, notifier=notifier, clock=clock)
    fresh.record_event(ET.DATA_ACCESS, Severity.LOW, "read", "9.9.9.9")
    before = (fresh.store.export_data(), fresh.engine.export_data())

    with pytest.raises(ValueError):
        fresh.import_data(data)

    assert (fresh.store.export_data(), fresh.engine.export_data()) == before
    assert len(fresh.get_all_rules()) == 7
    assert fresh.store.get_ip_info("9.9.9.9") is not None


def test_maintenance_is_idempotent(monitor, clock):
    for i in range(5):
        fail_login(monitor, "5.5.5.5", "bob")
    monitor.record_event(ET.XSS_ATTEMPT, Severity.HIGH, "scan", "2.2.2.2", payload="<script>")
    clock.advance(8 * 24 * 3600)

    first = monitor.perform_maintenance()
    assert first == {"events": 6, "locks": 1, "blocks": 2, "alerts": 2}
    state = (monitor.store.export_data(), monitor.engine.export_data())

    second = monitor.perform_maintenance()
    assert second == {"events": 0, "locks": 0, "blocks": 0, "alerts": 0}
    assert (monitor.store.export_data(), monitor.engine.export_data()) == state


def test_blocks_survive_restart(tmp_path, clock):
    config = MonitorConfig(enabled=True, database_path=str(tmp_path / "secmon.db"))

    first = SecurityMonitor(config, clock=clock)
    first.record_event(ET.INJECTION_ATTEMPT, Severity.HIGH, "scan", "6.6.6.6",
                       payload="drop table users")
    first.shutdown()

    with SecurityMonitor(config, clock=clock) as second:
        assert second.get_ip_info("6.6.6.6").blocked_until == clock.now + 7200
        assert second.is_ip_blocked("6.6.6.6")
        assert second.storage.count_events() == 1
        assert second.storage.fetch_alerts()[0]["rule_id"] == "sql_injection_attempt"


def test_new_login_locations_reach_user_assessment(monitor, clock):
    for n in range(5):
        monitor.record_event(ET.LOGIN_SUCCESS, Severity.LOW, "ok", f"10.9.0.{n}", user_id="u")
        clock.advance(60)

    assessment = monitor.analyze_user_threat("u")

    assert "Logins from 5 new locations" in assessment.factors
    assert "Multiple new locations in short time" in assessment.factors
    assert "Impossible travel detected" in assessment.factors
    assert "Require multi-factor authentication" in assessment.immediate_actions
    # 10 per new location plus 10 for missing MFA
    assert assessment.risk_score == 60


def run_threads(targets):
    threads = [threading.Thread(target=target) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert not any(thread.is_alive() for thread in threads)


def test_concurrent_failures_on_one_ip_and_user_are_all_counted(monitor):
    def worker():
        for _ in range(10):
            fail_login(monitor, "3.3.3.3", "shared")

    run_threads([worker] * 8)

    info = monitor.get_ip_info("3.3.3.3")
    assert info.request_count == 80
    assert info.failed_logins == 80
    assert info.risk_score == 100
    assert monitor.get_user_profile("shared").failed_login_attempts == 80
    assert monitor.store.get_event_statistics()["total_events"] == 80


def test_maintenance_runs_alongside_ingestion(monitor):
    done = threading.Event()

    def maintain():
        while not done.is_set():
            monitor.perform_maintenance()

    def worker(n):
        def ingest():
            for i in range(50):
                fail_login(monitor, f"10.5.{n}.{i % 5}", f"user{n}_{i % 3}")
        return ingest

    maintainer = threading.Thread(target=maintain)
    maintainer.start()
    try:
        run_threads([worker(n) for n in range(4)])
    finally:
        done.set()
        maintainer.join(timeout=30)
    assert not maintainer.is_alive()

    assert monitor.store.get_event_statistics()["total_events"] == 200
    assert sum(info.request_count for info in monitor.store.get_all_ip_info()) == 200
    profiles = monitor.store.get_all_user_profiles()
    assert sum(p.failed_login_attempts for p in profiles) == 200
