# secmon/models.py
import random
import string
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from .bounded import bounded_append


MAX_KNOWN_IPS = 10
MAX_SECURITY_FLAGS = 50
MAX_RISK_SCORE = 100


class SecurityEventType(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_FAILURE = "login_failure"
    LOGIN_SUCCESS = "login_success"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_LOCKOUT = "account_lockout"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_ACCESS = "data_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    API_ABUSE = "api_abuse"
    INJECTION_ATTEMPT = "injection_attempt"
    XSS_ATTEMPT = "xss_attempt"
    CSRF_ATTEMPT = "csrf_attempt"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: int) -> "RiskLevel":
        if score >= 80:
            return cls.CRITICAL
        if score >= 60:
            return cls.HIGH
        if score >= 30:
            return cls.MEDIUM
        return cls.LOW


def clamp_score(score: float) -> int:
    """Keep a risk score inside [0, 100]."""
    return int(max(0, min(MAX_RISK_SCORE, score)))


def make_id(prefix: str, now: Optional[float] = None) -> str:
    ts = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{ts}_{suffix}"


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    type: SecurityEventType
    severity: Severity
    description: str
    ip_address: str
    timestamp: float               # seconds since epoch
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None  # example "/api/admin/users"
    method: Optional[str] = None
    payload: Any = None            # raw request body, whatever the caller saw
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityEvent":
        return cls(
            id=data["id"],
            type=SecurityEventType(data["type"]),
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            ip_address=data["ip_address"],
            timestamp=float(data["timestamp"]),
            user_id=data.get("user_id"),
            user_agent=data.get("user_agent"),
            endpoint=data.get("endpoint"),
            method=data.get("method"),
            payload=data.get("payload"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class IPTrackingInfo:
    ip_address: str
    first_seen: float
    last_seen: float
    request_count: int = 0
    failed_logins: int = 0
    successful_logins: int = 0
    suspicious_activities: int = 0
    risk_score: int = 0
    is_blocked: bool = False
    blocked_until: Optional[float] = None
    block_reason: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    def adjust_risk(self, delta: int) -> None:
        self.risk_score = clamp_score(self.risk_score + delta)

    def block_active(self, now: float) -> bool:
        if not self.is_blocked:
            return False
        return self.blocked_until is None or now < self.blocked_until

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IPTrackingInfo":
        return cls(**data)


@dataclass
class SecurityFlag:
    kind: str             # example "new_location", "auto_locked"
    raised_at: float
    ip_address: Optional[str] = None
    event_id: Optional[str] = None    # the event that raised it

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserSecurityProfile:
    user_id: str
    last_login: Optional[float] = None
    last_failed_login: Optional[float] = None
    failed_login_attempts: int = 0
    is_locked: bool = False
    locked_until: Optional[float] = None
    suspicious_activities: int = 0
    risk_score: int = 0
    known_ips: List[str] = field(default_factory=list)
    security_flags: List[SecurityFlag] = field(default_factory=list)
    mfa_enabled: bool = False

    def adjust_risk(self, delta: int) -> None:
        self.risk_score = clamp_score(self.risk_score + delta)

    def lock_active(self, now: float) -> bool:
        if not self.is_locked:
            return False
        return self.locked_until is None or now < self.locked_until

    def remember_ip(self, ip_address: str) -> Tuple[bool, List[str]]:
        """Returns (was_new, evicted_ips). Newest IPs win once the cap is hit."""
        if ip_address in self.known_ips:
            return False, []
        return True, bounded_append(self.known_ips, ip_address, MAX_KNOWN_IPS)

    def raise_flag(self, flag: SecurityFlag) -> List[SecurityFlag]:
        return bounded_append(self.security_flags, flag, MAX_SECURITY_FLAGS)

    def new_location_event_ids(self) -> Set[str]:
        """Ids of the logins that came from an IP not yet known for this user."""
        return {
            flag.event_id for flag in self.security_flags
            if flag.kind == "new_location" and flag.event_id
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSecurityProfile":
        data = dict(data)
        data["known_ips"] = list(data.get("known_ips") or [])
        data["security_flags"] = [
            SecurityFlag(**flag) for flag in data.get("security_flags") or []
        ]
        return cls(**data)


@dataclass
class SecurityRule:
    id: str
    name: str
    type: SecurityEventType
    condition: str         # name of a registered condition evaluator
    action: str            # name of a registered action evaluator
    description: str = ""
    severity: Severity = Severity.MEDIUM
    priority: int = 1      # lower runs first
    enabled: bool = True
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityRule":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            type=SecurityEventType(data["type"]),
            condition=data["condition"],
            action=data["action"],
            description=data.get("description", ""),
            severity=Severity(data.get("severity", "medium")),
            priority=int(data.get("priority", 1)),
            enabled=bool(data.get("enabled", True)),
            params=dict(data.get("params") or {}),
        )


@dataclass
class SecurityAlert:
    id: str
    rule_id: str
    event: SecurityEvent
    severity: Severity
    message: str
    timestamp: float
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[float] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event"] = self.event.to_dict()
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityAlert":
        data = dict(data)
        data["event"] = SecurityEvent.from_dict(data["event"])
        data["severity"] = Severity(data["severity"])
        return cls(**data)


@dataclass(frozen=True)
class AttackPattern:
    id: str
    name: str
    description: str
    indicators: Tuple[str, ...]
    severity: Severity
    mitigation: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "indicators": list(self.indicators),
            "severity": self.severity.value,
            "mitigation": list(self.mitigation),
        }


@dataclass
class ThreatAssessment:
    risk_level: RiskLevel
    risk_score: int
    factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    immediate_actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data


@dataclass
class SecurityContext:
    """
    Read-only view handed to every rule evaluation.

    The aggregate maps are shallow copies taken after the event was recorded.
    blocked_ips is the one mutable member: block actions add to it so later
    rules in the same pass see the block.
    """
    ip_tracking: Mapping[str, IPTrackingInfo]
    user_profiles: Mapping[str, UserSecurityProfile]
    recent_events: Tuple[SecurityEvent, ...]
    blocked_ips: set
    locked_users: FrozenSet[str]
    now: float

    @classmethod
    def build(
        cls,
        ip_tracking: Dict[str, IPTrackingInfo],
        user_profiles: Dict[str, UserSecurityProfile],
        recent_events: List[SecurityEvent],
        now: float,
    ) -> "SecurityContext":
        return cls(
            ip_tracking=MappingProxyType(ip_tracking),
            user_profiles=MappingProxyType(user_profiles),
            recent_events=tuple(recent_events),
            blocked_ips={ip for ip, info in ip_tracking.items() if info.block_active(now)},
            locked_users=frozenset(
                uid for uid, prof in user_profiles.items() if prof.lock_active(now)
            ),
            now=now,
        )
