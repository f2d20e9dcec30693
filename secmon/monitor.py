# secmon/monitor.py
"""
SecurityMonitor: the single entry point host applications talk to.

It owns the wiring (event store, rule engine, threat analyzer, notifier and
optional SQLite storage) and the maintenance thread. Detection logic lives in
the rule engine and its evaluators.
"""
import logging
import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .config import MonitorConfig
from .event_tracker import EventStore
from .models import (
    IPTrackingInfo,
    SecurityAlert,
    SecurityContext,
    SecurityEvent,
    SecurityEventType,
    SecurityRule,
    Severity,
    ThreatAssessment,
    UserSecurityProfile,
)
from .notifier import AlertNotifier
from .rule_engine import RuleEngine
from .storage import SQLiteStorage
from .threat_analyzer import CountryRiskClassifier, ThreatAnalyzer

logger = logging.getLogger(__name__)

ENTITY_WINDOW = 100
REPORT_WINDOW = 5000
RECENT_EVENTS_IN_STATS = 50
TOP_RISKY = 10


class SecurityMonitor:
    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        storage: Optional[SQLiteStorage] = None,
        notifier: Optional[AlertNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or MonitorConfig()
        self.clock = clock

        self._owns_storage = False
        if storage is None and self.config.database_path:
            storage = SQLiteStorage(self.config.database_path)
            storage.connect()
            storage.init_db()
            self._owns_storage = True
        self.storage = storage

        if notifier is None:
            notifier = AlertNotifier.from_config(
                self.config,
                block_sink=storage.persist_block if storage else None,
                alert_sink=storage.insert_alert if storage else None,
                clock=clock,
            )
        self.notifier = notifier

        self.store = EventStore(
            max_events=self.config.max_events_in_memory,
            max_tracked_ips=self.config.max_tracked_ips,
            max_tracked_users=self.config.max_tracked_users,
            retention=self.config.event_retention,
            lock_threshold=self.config.max_failed_logins,
            lock_duration=self.config.user_lock_duration,
            archive=storage,
            clock=clock,
        )
        self.engine = RuleEngine(
            self.config.rule_dir,
            self.store,
            notifier=self.notifier,
            defaults=self.config.rule_defaults(),
            max_alerts=self.config.max_alerts_in_memory,
            clock=clock,
        )
        self.engine.load_rules()
        self.analyzer = ThreatAnalyzer(
            geo_classifier=CountryRiskClassifier(
                self.config.high_risk_countries, self.config.medium_risk_countries
            ),
            clock=clock,
        )

        self._stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # -------------- lifecycle --------------

    def start(self) -> None:
        if self._maintenance_thread is not None and self._maintenance_thread.is_alive():
            logger.info("Security monitor already running")
            return

        self.notifier.start()
        self.restore_blocks()

        self._stop.clear()

        def loop():
            while not self._stop.wait(self.config.cleanup_interval):
                try:
                    self.perform_maintenance()
                except Exception:
                    logger.exception("Security maintenance run failed")

        self._maintenance_thread = threading.Thread(
            target=loop, name="secmon-maintenance", daemon=True
        )
        self._maintenance_thread.start()
        logger.info(
            "Security monitor started (enabled=%s, rules=%d)",
            self.enabled, len(self.engine.rules),
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout)
            self._maintenance_thread = None
        self.notifier.stop(timeout)
        self.notifier.process_pending()
        if self._owns_storage and self.storage is not None:
            self.storage.close()
        logger.info("Security monitor stopped")

    def __enter__(self) -> "SecurityMonitor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def restore_blocks(self) -> int:
        """Re-apply blocks persisted in storage that have not yet expired."""
        if self.storage is None:
            return 0
        blocks = self.storage.fetch_active_blocks(self.clock())
        for block in blocks:
            self.store.block_ip(block["ip_address"], block["blocked_until"], block["reason"])
        if blocks:
            logger.info("Restored %d persisted IP blocks", len(blocks))
        return len(blocks)

    # -------------- ingestion --------------

    def record_event(
        self,
        event_type,
        severity,
        description: str,
        ip_address: str,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        payload: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        """
        Record an event and run the rules bound to its type.

        Returns None when monitoring is disabled or the event type/severity is
        not recognised. A failing rule pass never prevents the event from
        being recorded, and nothing is blocked by a pass that failed.
        """
        if not self.enabled:
            return None

        try:
            event_type = SecurityEventType(event_type)
            severity = Severity(severity)
        except ValueError as e:
            logger.warning("Ignoring security event with bad type or severity: %s", e)
            return None

        with self.store.ip_locks.for_key(ip_address):
            if user_id:
                with self.store.user_locks.for_key(user_id):
                    return self._record_and_evaluate(
                        event_type, severity, description, ip_address, user_id,
                        user_agent, endpoint, method, payload, metadata,
                    )
            return self._record_and_evaluate(
                event_type, severity, description, ip_address, user_id,
                user_agent, endpoint, method, payload, metadata,
            )

    def _record_and_evaluate(self, event_type, severity, description, ip_address,
                             user_id, user_agent, endpoint, method, payload,
                             metadata) -> SecurityEvent:
        event = self.store.record_event(
            event_type, severity, description, ip_address,
            user_id=user_id, user_agent=user_agent, endpoint=endpoint,
            method=method, payload=payload, metadata=metadata,
        )
        try:
            context = self.build_security_context()
            self.engine.evaluate_rules(event, context)
        except Exception:
            logger.exception("Rule evaluation failed for event %s, continuing unprotected", event.id)
        return event

    def build_security_context(self) -> SecurityContext:
        return SecurityContext.build(
            self.store.ip_tracking.as_dict(),
            self.store.user_profiles.as_dict(),
            self.store.get_recent_events(self.config.recent_event_window),
            self.clock(),
        )

    def check_request(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        payload: Any = None,
    ) -> bool:
        """
        Request gate for host middleware: False for a blocked IP, otherwise
        the request is recorded as data access and allowed.
        """
        if self.is_ip_blocked(ip_address):
            logger.warning("Rejected request from blocked IP %s to %s", ip_address, endpoint)
            return False
        self.record_event(
            SecurityEventType.DATA_ACCESS,
            Severity.LOW,
            f"{method or 'REQUEST'} {endpoint or '/'}",
            ip_address,
            user_id=user_id,
            endpoint=endpoint,
            method=method,
            payload=payload,
            user_agent=user_agent,
        )
        return True

    # -------------- block / lock checks --------------

    def is_ip_blocked(self, ip_address: str) -> bool:
        with self.store.ip_locks.for_key(ip_address):
            info = self.store.get_ip_info(ip_address)
            if info is None or not info.is_blocked:
                return False
            if info.block_active(self.clock()):
                return True
            self.store.unblock_ip(ip_address)
        logger.info("IP block expired: %s", ip_address)
        return False

    def is_user_locked(self, user_id: str) -> bool:
        with self.store.user_locks.for_key(user_id):
            profile = self.store.get_user_profile(user_id)
            if profile is None or not profile.is_locked:
                return False
            if profile.lock_active(self.clock()):
                return True
            self.store.unlock_user(user_id)
        logger.info("User lock expired: %s", user_id)
        return False

    # -------------- manual mitigation --------------

    def block_ip(self, ip_address: str, duration: Optional[float] = None,
                 reason: str = "Manual block") -> float:
        duration = self.config.ip_block_duration if duration is None else duration
        blocked_until = self.clock() + duration
        self.store.block_ip(ip_address, blocked_until, reason)
        self.notifier.persist_block(ip_address, blocked_until, reason)
        logger.warning("IP address blocked manually: %s (reason: %s)", ip_address, reason)
        return blocked_until

    def unblock_ip(self, ip_address: str) -> bool:
        released = self.store.unblock_ip(ip_address)
        if self.storage is not None:
            self.storage.remove_block(ip_address)
        if released:
            logger.info("IP address unblocked: %s", ip_address)
        return released

    def lock_user(self, user_id: str, duration: Optional[float] = None) -> float:
        duration = self.config.user_lock_duration if duration is None else duration
        locked_until = self.clock() + duration
        self.store.lock_user(user_id, locked_until)
        logger.warning("User locked manually: %s", user_id)
        return locked_until

    def unlock_user(self, user_id: str) -> bool:
        unlocked = self.store.unlock_user(user_id)
        if unlocked:
            logger.info("User unlocked: %s", user_id)
        return unlocked

    # -------------- threat analysis --------------

    def analyze_ip_threat(self, ip_address: str) -> Optional[ThreatAssessment]:
        info = self.store.get_ip_info(ip_address)
        if info is None:
            return None
        events = self.store.get_events_by_ip(ip_address, limit=ENTITY_WINDOW)
        return self.analyzer.analyze_ip_threat(info, events)

    def analyze_user_threat(self, user_id: str) -> Optional[ThreatAssessment]:
        profile = self.store.get_user_profile(user_id)
        if profile is None:
            return None
        events = self.store.get_events_by_user(user_id, limit=ENTITY_WINDOW)
        return self.analyzer.analyze_user_threat(profile, events)

    def generate_threat_report(self) -> Dict[str, Any]:
        return self.analyzer.generate_threat_report(
            self.store.get_recent_events(REPORT_WINDOW),
            self.store.get_all_ip_info(),
            self.store.get_all_user_profiles(),
        )

    # -------------- queries --------------

    def search_events(self, **filters) -> List[SecurityEvent]:
        return self.store.search_events(**filters)

    def get_events_by_ip(self, ip_address: str, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self.store.get_events_by_ip(ip_address, limit)

    def get_events_by_user(self, user_id: str, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self.store.get_events_by_user(user_id, limit)

    def get_ip_info(self, ip_address: str) -> Optional[IPTrackingInfo]:
        return self.store.get_ip_info(ip_address)

    def get_user_profile(self, user_id: str) -> Optional[UserSecurityProfile]:
        return self.store.get_user_profile(user_id)

    def get_security_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        ips = self.store.get_all_ip_info()
        users = self.store.get_all_user_profiles()

        distribution = Counter(
            self.config.severity_for_score(entity.risk_score) or "none"
            for entity in ips + users
        )

        stats = self.store.get_event_statistics()
        stats.update({
            "blocked_ips": sum(1 for ip in ips if ip.block_active(now)),
            "locked_users": sum(1 for u in users if u.lock_active(now)),
            "recent_events": self.store.get_recent_events(RECENT_EVENTS_IN_STATS),
            "top_risky_ips": sorted(ips, key=lambda ip: ip.risk_score, reverse=True)[:TOP_RISKY],
            "top_risky_users": sorted(users, key=lambda u: u.risk_score, reverse=True)[:TOP_RISKY],
            "risk_distribution": {
                level: distribution.get(level, 0)
                for level in ("none", "low", "medium", "high", "critical")
            },
            "rule_statistics": self.engine.get_rule_statistics(),
            "notifier": self.notifier.get_stats(),
        })
        stats["alerts_by_rule"] = stats["rule_statistics"]["alerts_by_rule"]
        return stats

    # -------------- alerts / rules --------------

    def get_security_alerts(self, **filters) -> List[SecurityAlert]:
        return self.engine.get_alerts(**filters)

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        return self.engine.acknowledge_alert(alert_id, acknowledged_by)

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        return self.engine.resolve_alert(alert_id, resolved_by)

    def add_rule(self, rule: SecurityRule) -> None:
        self.engine.add_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        return self.engine.remove_rule(rule_id)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        return self.engine.set_rule_enabled(rule_id, enabled)

    def get_rule(self, rule_id: str) -> Optional[SecurityRule]:
        return self.engine.get_rule(rule_id)

    def get_all_rules(self) -> List[SecurityRule]:
        return self.engine.get_all_rules()

    # -------------- maintenance --------------

    def perform_maintenance(self) -> Dict[str, int]:
        """Purge old events and alerts, expire locks and blocks. Safe to repeat."""
        counts = {
            "events": self.store.cleanup_old_events(),
            "locks": self.store.cleanup_expired_locks(),
            "blocks": self.store.cleanup_expired_blocks(),
            "alerts": self.engine.cleanup_old_alerts(),
        }
        logger.info("Security maintenance completed: %s", counts)
        return counts

    # -------------- export / import --------------

    def export_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        data.update(self.store.export_data())
        data.update(self.engine.export_data())
        stats = self.store.get_event_statistics()
        stats["rule_statistics"] = self.engine.get_rule_statistics()
        data["statistics"] = stats
        data["exported_at"] = self.clock()
        return data

    def import_data(self, data: Dict[str, Any]) -> None:
        """Replace tracked state, rules and alerts. Nothing changes if any part is malformed."""
        tables = self.store.parse_import(data)
        parsed = self.engine.parse_import(data)
        self.store.apply_import(tables)
        self.engine.apply_import(parsed)
        logger.info("Imported security monitor state")
