# secmon/event_tracker.py
"""
Event store: the append-only security event log plus the two aggregate
tables derived from it (per-IP tracking and per-user security profiles).

Aggregates are updated synchronously on every event. Writers take the
per-key stripe from ``ip_locks`` / ``user_locks`` (always IP before user),
so concurrent events for one IP or one user never race on its counters.
"""
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .bounded import EventLog, LRURegistry
from .locks import StripedLock
from .models import (
    IPTrackingInfo,
    SecurityEvent,
    SecurityEventType,
    SecurityFlag,
    Severity,
    UserSecurityProfile,
    make_id,
)

logger = logging.getLogger(__name__)

ET = SecurityEventType

HOUR = 3600.0
DAY = 24 * HOUR

# (failed, successful, suspicious, risk) applied to the IP aggregate
IP_DELTAS = {
    ET.LOGIN_FAILURE: (1, 0, 0, 10),
    ET.LOGIN_SUCCESS: (-1, 1, 0, -5),
    ET.SUSPICIOUS_ACTIVITY: (0, 0, 1, 25),
    ET.INJECTION_ATTEMPT: (0, 0, 1, 25),
    ET.XSS_ATTEMPT: (0, 0, 1, 25),
    ET.API_ABUSE: (0, 0, 1, 25),
    ET.UNAUTHORIZED_ACCESS: (0, 0, 0, 15),
    ET.RATE_LIMIT_EXCEEDED: (0, 0, 0, 5),
}

USER_SUSPICIOUS_TYPES = (ET.SUSPICIOUS_ACTIVITY, ET.INJECTION_ATTEMPT, ET.XSS_ATTEMPT)


class EventStore:
    def __init__(
        self,
        max_events: int = 10000,
        max_tracked_ips: int = 10000,
        max_tracked_users: int = 10000,
        retention: float = 7 * DAY,
        lock_threshold: int = 5,
        lock_duration: float = 1800.0,
        archive: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention = retention
        self.lock_threshold = lock_threshold
        self.lock_duration = lock_duration
        self.archive = archive    # anything with insert_event(event), e.g. SQLiteStorage
        self.clock = clock

        self.events: EventLog[SecurityEvent] = EventLog(max_events, lambda e: e.timestamp)
        self.ip_tracking: LRURegistry[str, IPTrackingInfo] = LRURegistry(
            max_tracked_ips, pinned=lambda info: info.is_blocked
        )
        self.user_profiles: LRURegistry[str, UserSecurityProfile] = LRURegistry(
            max_tracked_users, pinned=lambda prof: prof.is_locked
        )
        self.ip_locks = StripedLock()
        self.user_locks = StripedLock()

    # -------------- ingestion --------------

    def record_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        description: str,
        ip_address: str,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        payload: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        """Assign id + timestamp, append to the log and update aggregates."""
        now = self.clock()
        event = SecurityEvent(
            id=make_id("sec", now),
            type=SecurityEventType(event_type),
            severity=Severity(severity),
            description=description,
            ip_address=ip_address,
            timestamp=now,
            user_id=user_id,
            user_agent=user_agent,
            endpoint=endpoint,
            method=method,
            payload=payload,
            metadata=dict(metadata or {}),
        )

        if self.events.append(event) is not None:
            logger.debug("Event log full, evicted oldest event (%d so far)", self.events.evicted)

        with self.ip_locks.for_key(ip_address):
            self._update_ip_tracking(event)
            if user_id:
                with self.user_locks.for_key(user_id):
                    self._update_user_profile(event)

        self._log_and_archive(event)
        return event

    def _log_and_archive(self, event: SecurityEvent) -> None:
        logger.info(
            "Security event recorded: %s id=%s severity=%s ip=%s user=%s",
            event.type.value, event.id, event.severity.value,
            event.ip_address, event.user_id,
        )
        # the archive serializes the raw request payload, anything can be in there
        try:
            if self.archive is not None:
                self.archive.insert_event(event)
        except Exception:
            logger.exception("Failed to archive security event %s", event.id)

    def _update_ip_tracking(self, event: SecurityEvent) -> None:
        info, evicted = self.ip_tracking.get_or_create(
            event.ip_address,
            lambda: IPTrackingInfo(
                ip_address=event.ip_address,
                first_seen=event.timestamp,
                last_seen=event.timestamp,
            ),
        )
        for ip, _ in evicted:
            logger.info("IP table full, evicted tracking for %s", ip)

        info.last_seen = event.timestamp
        info.request_count += 1

        delta = IP_DELTAS.get(event.type)
        if delta is None:
            return
        failed, successful, suspicious, risk = delta
        info.failed_logins = max(0, info.failed_logins + failed)
        info.successful_logins += successful
        info.suspicious_activities += suspicious
        info.adjust_risk(risk)

    def _update_user_profile(self, event: SecurityEvent) -> None:
        profile, evicted = self.user_profiles.get_or_create(
            event.user_id, lambda: UserSecurityProfile(user_id=event.user_id)
        )
        for user_id, _ in evicted:
            logger.info("User table full, evicted profile for %s", user_id)

        ts = event.timestamp
        if event.type == ET.LOGIN_SUCCESS:
            profile.last_login = ts
            profile.failed_login_attempts = 0
            profile.adjust_risk(-10)
            is_new, dropped_ips = profile.remember_ip(event.ip_address)
            if is_new:
                self._raise_flag(profile, SecurityFlag("new_location", ts, event.ip_address, event.id))
            if dropped_ips:
                logger.debug("User %s forgot known IPs %s", profile.user_id, dropped_ips)

        elif event.type == ET.LOGIN_FAILURE:
            profile.failed_login_attempts += 1
            profile.last_failed_login = ts
            profile.adjust_risk(15)
            if profile.failed_login_attempts >= self.lock_threshold:
                profile.is_locked = True
                profile.locked_until = ts + self.lock_duration
                self._raise_flag(profile, SecurityFlag("auto_locked", ts, event.ip_address, event.id))
                logger.warning(
                    "User %s locked after %d failed logins",
                    profile.user_id, profile.failed_login_attempts,
                )

        elif event.type in USER_SUSPICIOUS_TYPES:
            profile.suspicious_activities += 1
            profile.adjust_risk(20)
            self._raise_flag(profile, SecurityFlag(event.type.value, ts, event.ip_address, event.id))

        elif event.type == ET.PRIVILEGE_ESCALATION:
            profile.adjust_risk(30)
            self._raise_flag(profile, SecurityFlag(event.type.value, ts, event.ip_address, event.id))

    def _raise_flag(self, profile: UserSecurityProfile, flag: SecurityFlag) -> None:
        for old in profile.raise_flag(flag):
            logger.debug("User %s dropped flag %s", profile.user_id, old.kind)

    # -------------- queries --------------

    @staticmethod
    def _last(events: List[SecurityEvent], limit: Optional[int]) -> List[SecurityEvent]:
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type, limit: Optional[int] = None) -> List[SecurityEvent]:
        event_type = SecurityEventType(event_type)
        return self._last([e for e in self.events if e.type == event_type], limit)

    def get_events_by_ip(self, ip_address: str, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self._last([e for e in self.events if e.ip_address == ip_address], limit)

    def get_events_by_user(self, user_id: str, limit: Optional[int] = None) -> List[SecurityEvent]:
        return self._last([e for e in self.events if e.user_id == user_id], limit)

    def get_events_by_severity(self, severity, limit: Optional[int] = None) -> List[SecurityEvent]:
        severity = Severity(severity)
        return self._last([e for e in self.events if e.severity == severity], limit)

    def get_events_in_time_window(self, start_time: float,
                                  end_time: Optional[float] = None) -> List[SecurityEvent]:
        end_time = self.clock() if end_time is None else end_time
        return [e for e in self.events if start_time <= e.timestamp <= end_time]

    def get_recent_events(self, limit: int = 100) -> List[SecurityEvent]:
        return self.events.tail(limit)

    def search_events(
        self,
        type=None,
        severity=None,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        event_type = SecurityEventType(type) if type else None
        severity = Severity(severity) if severity else None

        results = []
        for e in self.events:
            if event_type and e.type != event_type:
                continue
            if severity and e.severity != severity:
                continue
            if ip_address and e.ip_address != ip_address:
                continue
            if user_id and e.user_id != user_id:
                continue
            if start_time is not None and e.timestamp < start_time:
                continue
            if end_time is not None and e.timestamp > end_time:
                continue
            results.append(e)
        return self._last(results, limit)

    def get_ip_info(self, ip_address: str) -> Optional[IPTrackingInfo]:
        return self.ip_tracking.get(ip_address)

    def get_all_ip_info(self) -> List[IPTrackingInfo]:
        return self.ip_tracking.values()

    def get_user_profile(self, user_id: str) -> Optional[UserSecurityProfile]:
        return self.user_profiles.get(user_id)

    def get_all_user_profiles(self) -> List[UserSecurityProfile]:
        return self.user_profiles.values()

    def get_high_risk_ips(self, threshold: int = 50) -> List[IPTrackingInfo]:
        risky = [ip for ip in self.ip_tracking.values() if ip.risk_score >= threshold]
        return sorted(risky, key=lambda ip: ip.risk_score, reverse=True)

    def get_high_risk_users(self, threshold: int = 50) -> List[UserSecurityProfile]:
        risky = [u for u in self.user_profiles.values() if u.risk_score >= threshold]
        return sorted(risky, key=lambda u: u.risk_score, reverse=True)

    def get_event_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        events = self.events.snapshot()
        by_type = Counter(e.type.value for e in events)
        by_severity = Counter(e.severity.value for e in events)
        return {
            "total_events": len(events),
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "events_last_24_hours": sum(1 for e in events if e.timestamp >= now - DAY),
            "events_last_hour": sum(1 for e in events if e.timestamp >= now - HOUR),
            "unique_ips": len({e.ip_address for e in events}),
            "unique_users": len({e.user_id for e in events if e.user_id}),
            "evicted_events": self.events.evicted,
            "evicted_ips": self.ip_tracking.evicted,
            "evicted_users": self.user_profiles.evicted,
        }

    # -------------- manual mitigation --------------

    def block_ip(self, ip_address: str, blocked_until: float,
                 reason: str = "Automated security block") -> IPTrackingInfo:
        now = self.clock()
        with self.ip_locks.for_key(ip_address):
            info, _ = self.ip_tracking.get_or_create(
                ip_address,
                lambda: IPTrackingInfo(ip_address=ip_address, first_seen=now, last_seen=now),
            )
            info.is_blocked = True
            info.blocked_until = blocked_until
            info.block_reason = reason
        return info

    def unblock_ip(self, ip_address: str) -> bool:
        with self.ip_locks.for_key(ip_address):
            info = self.ip_tracking.get(ip_address)
            if info is None or not info.is_blocked:
                return False
            info.is_blocked = False
            info.blocked_until = None
            info.block_reason = None
            return True

    def lock_user(self, user_id: str, locked_until: float) -> UserSecurityProfile:
        with self.user_locks.for_key(user_id):
            profile, _ = self.user_profiles.get_or_create(
                user_id, lambda: UserSecurityProfile(user_id=user_id)
            )
            profile.is_locked = True
            profile.locked_until = locked_until
        return profile

    def unlock_user(self, user_id: str, risk_relief: int = 0) -> bool:
        with self.user_locks.for_key(user_id):
            profile = self.user_profiles.get(user_id)
            if profile is None or not profile.is_locked:
                return False
            profile.is_locked = False
            profile.locked_until = None
            profile.failed_login_attempts = 0
            profile.adjust_risk(-risk_relief)
            return True

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> UserSecurityProfile:
        with self.user_locks.for_key(user_id):
            profile, _ = self.user_profiles.get_or_create(
                user_id, lambda: UserSecurityProfile(user_id=user_id)
            )
            profile.mfa_enabled = enabled
        return profile

    def set_geolocation(self, ip_address: str, country: Optional[str] = None,
                        region: Optional[str] = None, city: Optional[str] = None) -> bool:
        with self.ip_locks.for_key(ip_address):
            info = self.ip_tracking.get(ip_address)
            if info is None:
                return False
            info.country, info.region, info.city = country, region, city
            return True

    # -------------- maintenance --------------

    def cleanup_old_events(self) -> int:
        removed = self.events.purge_before(self.clock() - self.retention)
        if removed:
            logger.info("Cleaned up %d old security events", removed)
        return removed

    def cleanup_expired_locks(self) -> int:
        now = self.clock()
        unlocked = 0
        for profile in self.user_profiles.values():
            with self.user_locks.for_key(profile.user_id):
                if (profile.is_locked and profile.locked_until is not None
                        and now >= profile.locked_until):
                    profile.is_locked = False
                    profile.locked_until = None
                    profile.failed_login_attempts = 0
                    profile.adjust_risk(-20)
                    unlocked += 1
        if unlocked:
            logger.info("Unlocked %d expired user accounts", unlocked)
        return unlocked

    def cleanup_expired_blocks(self) -> int:
        now = self.clock()
        released = 0
        for info in self.ip_tracking.values():
            with self.ip_locks.for_key(info.ip_address):
                if (info.is_blocked and info.blocked_until is not None
                        and now >= info.blocked_until):
                    info.is_blocked = False
                    info.blocked_until = None
                    info.block_reason = None
                    released += 1
        if released:
            logger.info("Released %d expired IP blocks", released)
        return released

    # -------------- export / import --------------

    def export_data(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "events": [e.to_dict() for e in self.events.snapshot()],
            "ip_tracking": [ip.to_dict() for ip in self.ip_tracking.values()],
            "user_profiles": [u.to_dict() for u in self.user_profiles.values()],
        }

    def import_data(self, data: Dict[str, Any]) -> None:
        """Replace each table present in data. Missing tables are left alone."""
        self.apply_import(self.parse_import(data))

    @staticmethod
    def parse_import(data: Dict[str, Any]) -> Dict[str, Any]:
        """Decode every table present in data. Raises before anything is replaced."""
        tables: Dict[str, Any] = {}
        try:
            if data.get("events") is not None:
                tables["events"] = [SecurityEvent.from_dict(e) for e in data["events"]]
            if data.get("ip_tracking") is not None:
                tables["ip_tracking"] = {
                    ip["ip_address"]: IPTrackingInfo.from_dict(ip) for ip in data["ip_tracking"]
                }
            if data.get("user_profiles") is not None:
                tables["user_profiles"] = {
                    u["user_id"]: UserSecurityProfile.from_dict(u) for u in data["user_profiles"]
                }
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed tracking data: {e}") from e
        return tables

    def apply_import(self, tables: Dict[str, Any]) -> None:
        if "events" in tables:
            self.events.replace(tables["events"])
        if "ip_tracking" in tables:
            self.ip_tracking.replace(tables["ip_tracking"])
        if "user_profiles" in tables:
            self.user_profiles.replace(tables["user_profiles"])
        logger.info("Imported security tracking data")

    def clear(self) -> None:
        self.events.clear()
        self.ip_tracking.clear()
        self.user_profiles.clear()
