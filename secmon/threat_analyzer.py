# secmon/threat_analyzer.py
"""
Point-in-time threat scoring for IPs and users, plus a report across every
tracked entity. Nothing here mutates the aggregates it is handed.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from .models import (
    AttackPattern,
    IPTrackingInfo,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    Severity,
    ThreatAssessment,
    UserSecurityProfile,
    clamp_score,
)

logger = logging.getLogger(__name__)

ET = SecurityEventType

CRITICAL_LEVELS = (RiskLevel.CRITICAL,)
HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)

PATTERN_RISK = {
    Severity.CRITICAL: 40,
    Severity.HIGH: 25,
    Severity.MEDIUM: 15,
    Severity.LOW: 5,
}

ATTACK_PATTERNS = (
    AttackPattern(
        id="brute_force_login",
        name="Brute Force Login Attack",
        description="Systematic attempts to guess user credentials",
        indicators=(
            "high_failed_login_rate",
            "sequential_username_attempts",
            "dictionary_password_patterns",
        ),
        severity=Severity.HIGH,
        mitigation=(
            "Implement account lockout policies",
            "Use CAPTCHA after failed attempts",
            "Enable multi-factor authentication",
            "Monitor and block suspicious IPs",
        ),
    ),
    AttackPattern(
        id="sql_injection_attack",
        name="SQL Injection Attack",
        description="Attempts to inject malicious SQL code",
        indicators=(
            "sql_keywords_in_payload",
            "union_select_patterns",
            "comment_injection_attempts",
        ),
        severity=Severity.CRITICAL,
        mitigation=(
            "Use parameterized queries",
            "Implement input validation",
            "Apply principle of least privilege",
            "Regular security code reviews",
        ),
    ),
    AttackPattern(
        id="xss_attack",
        name="Cross-Site Scripting Attack",
        description="Attempts to inject malicious scripts",
        indicators=(
            "script_tags_in_input",
            "javascript_protocol_usage",
            "event_handler_injection",
        ),
        severity=Severity.HIGH,
        mitigation=(
            "Implement Content Security Policy",
            "Sanitize user input",
            "Use output encoding",
            "Validate all user inputs",
        ),
    ),
    AttackPattern(
        id="ddos_attack",
        name="Distributed Denial of Service",
        description="Attempts to overwhelm system resources",
        indicators=(
            "high_request_volume",
            "multiple_source_ips",
            "resource_exhaustion_patterns",
        ),
        severity=Severity.CRITICAL,
        mitigation=(
            "Implement rate limiting",
            "Use CDN and load balancers",
            "Deploy DDoS protection services",
            "Monitor traffic patterns",
        ),
    ),
    AttackPattern(
        id="account_takeover",
        name="Account Takeover Attempt",
        description="Attempts to gain unauthorized access to user accounts",
        indicators=(
            "credential_stuffing_patterns",
            "session_hijacking_attempts",
            "unusual_login_locations",
        ),
        severity=Severity.HIGH,
        mitigation=(
            "Implement device fingerprinting",
            "Monitor login anomalies",
            "Use behavioral analytics",
            "Require re-authentication for sensitive actions",
        ),
    ),
)


class GeoRiskClassifier:
    """Maps an IP's geolocation to extra risk points. Subclass to plug in a feed."""

    def risk_for(self, ip_info: IPTrackingInfo) -> int:
        return 0


class CountryRiskClassifier(GeoRiskClassifier):
    def __init__(self, high_risk: Iterable[str] = (), medium_risk: Iterable[str] = (),
                 high_points: int = 20, medium_points: int = 10):
        self.high_risk = {c.upper() for c in high_risk}
        self.medium_risk = {c.upper() for c in medium_risk}
        self.high_points = high_points
        self.medium_points = medium_points

    def risk_for(self, ip_info: IPTrackingInfo) -> int:
        if not ip_info.country:
            return 0
        country = ip_info.country.upper()
        if country in self.high_risk:
            return self.high_points
        if country in self.medium_risk:
            return self.medium_points
        return 0


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


class ThreatAnalyzer:
    def __init__(self, geo_classifier: Optional[GeoRiskClassifier] = None,
                 clock: Callable[[], float] = time.time):
        self.geo_classifier = geo_classifier or GeoRiskClassifier()
        self.clock = clock
        self.attack_patterns: Dict[str, AttackPattern] = {p.id: p for p in ATTACK_PATTERNS}

    def get_attack_pattern(self, pattern_id: str) -> Optional[AttackPattern]:
        return self.attack_patterns.get(pattern_id)

    def get_all_attack_patterns(self) -> List[AttackPattern]:
        return list(self.attack_patterns.values())

    # -------------- IP --------------

    def analyze_ip_threat(self, ip_info: IPTrackingInfo,
                          recent_events: Sequence[SecurityEvent]) -> ThreatAssessment:
        score = ip_info.risk_score
        factors: List[str] = []
        recommendations: List[str] = []
        actions: List[str] = []

        if ip_info.failed_logins > 10:
            score += 20
            factors.append(f"High failed login count: {ip_info.failed_logins}")
            recommendations.append("Implement progressive delays for failed logins")
            if ip_info.failed_logins > 20:
                actions.append("Block IP address immediately")

        if ip_info.suspicious_activities > 5:
            score += 25
            factors.append(f"Multiple suspicious activities: {ip_info.suspicious_activities}")
            recommendations.append("Investigate IP address history and patterns")
            if ip_info.suspicious_activities > 10:
                actions.append("Add IP to high-risk monitoring list")

        ip_events = [e for e in recent_events if e.ip_address == ip_info.ip_address]
        rate = self.request_rate(ip_events)
        if rate > 100:
            score += 15
            factors.append(f"High request rate: {rate} req/min")
            recommendations.append("Implement rate limiting")
            if rate > 500:
                actions.append("Apply emergency rate limiting")

        geo_risk = self.geo_classifier.risk_for(ip_info)
        if geo_risk > 0:
            score += geo_risk
            factors.append(f"Geographic risk factor: {ip_info.country}")
            recommendations.append("Verify user identity for high-risk locations")

        for pattern in self.detect_attack_patterns(ip_events):
            score += PATTERN_RISK[pattern.severity]
            factors.append(f"Detected attack pattern: {pattern.name}")
            recommendations.extend(pattern.mitigation)
            if pattern.severity == Severity.CRITICAL:
                actions.append(f"Respond to {pattern.name} immediately")

        return self._assessment(score, factors, recommendations, actions)

    def request_rate(self, events: Sequence[SecurityEvent], window: float = 60.0) -> int:
        """Events per trailing window (one minute by default)."""
        since = self.clock() - window
        return sum(1 for e in events if e.timestamp > since)

    # -------------- user --------------

    def analyze_user_threat(self, profile: UserSecurityProfile,
                            recent_events: Sequence[SecurityEvent]) -> ThreatAssessment:
        score = profile.risk_score
        factors: List[str] = []
        recommendations: List[str] = []
        actions: List[str] = []

        if profile.failed_login_attempts > 3:
            score += 15
            factors.append(f"Recent failed login attempts: {profile.failed_login_attempts}")
            recommendations.append("Enable account monitoring")
            if profile.failed_login_attempts > 10:
                actions.append("Lock account temporarily")

        if profile.suspicious_activities > 3:
            score += 20
            factors.append(f"Suspicious activities detected: {profile.suspicious_activities}")
            recommendations.append("Require additional verification")
            if profile.suspicious_activities > 8:
                actions.append("Flag account for manual review")

        user_events = [e for e in recent_events if e.user_id == profile.user_id]
        locations = self.analyze_login_locations(
            user_events, profile.new_location_event_ids()
        )
        new_locations = locations["new_locations"]
        if new_locations > 0:
            score += 10 * new_locations
            factors.append(f"Logins from {new_locations} new locations")
            recommendations.append("Verify identity for new login locations")
            if new_locations > 3:
                actions.append("Require multi-factor authentication")
        factors.extend(locations["suspicious_patterns"])

        since = self.clock() - 24 * 3600
        recent_flags = [f for f in profile.security_flags if f.raised_at > since]
        if len(recent_flags) > 5:
            score += 25
            factors.append(f"Multiple security flags in 24h: {len(recent_flags)}")
            recommendations.append("Conduct security review")
            actions.append("Escalate to security team")

        for indicator in self.detect_compromise_indicators(user_events):
            score += 30
            factors.append(f"Compromise indicator: {indicator}")
            recommendations.append("Force password reset")
            actions.append("Suspend account pending investigation")

        if not profile.mfa_enabled:
            score += 10
            factors.append("Multi-factor authentication not enabled")
            recommendations.append("Enable multi-factor authentication")

        return self._assessment(score, factors, recommendations, actions)

    def analyze_login_locations(self, events: Sequence[SecurityEvent],
                                new_location_ids: Set[str]) -> Dict[str, Any]:
        """
        Count distinct IPs of the window's logins that the store flagged as
        new_location, and note rapid location changes.
        """
        logins = sorted(
            (e for e in events if e.type == ET.LOGIN_SUCCESS), key=lambda e: e.timestamp
        )
        new_ips = _unique(e.ip_address for e in logins if e.id in new_location_ids)

        patterns: List[str] = []
        if len(new_ips) > 2:
            patterns.append("Multiple new locations in short time")

        rapid = any(
            later.timestamp - earlier.timestamp < 300
            and later.ip_address != earlier.ip_address
            for earlier, later in zip(logins, logins[1:])
        )
        if rapid and len(new_ips) > 1:
            patterns.append("Impossible travel detected")

        return {"new_locations": len(new_ips), "suspicious_patterns": patterns}

    @staticmethod
    def detect_compromise_indicators(events: Sequence[SecurityEvent]) -> List[str]:
        indicators = []
        if any(e.type == ET.PRIVILEGE_ESCALATION for e in events):
            indicators.append("Privilege escalation attempts")
        if sum(1 for e in events if e.type == ET.DATA_ACCESS) > 50:
            indicators.append("Abnormal data access patterns")
        if any(e.type == ET.API_ABUSE for e in events):
            indicators.append("API abuse detected")
        return indicators

    # -------------- patterns / report --------------

    def detect_attack_patterns(self, events: Sequence[SecurityEvent]) -> List[AttackPattern]:
        found: List[AttackPattern] = []
        types = [e.type for e in events]

        if types.count(ET.LOGIN_FAILURE) > 10:
            found.append(self.attack_patterns["brute_force_login"])
        if ET.INJECTION_ATTEMPT in types:
            found.append(self.attack_patterns["sql_injection_attack"])
        if ET.XSS_ATTEMPT in types:
            found.append(self.attack_patterns["xss_attack"])
        if len(events) > 1000:
            found.append(self.attack_patterns["ddos_attack"])
        return found

    def generate_threat_report(
        self,
        events: Sequence[SecurityEvent],
        ip_tracking: Sequence[IPTrackingInfo],
        user_profiles: Sequence[UserSecurityProfile],
        top_n: int = 10,
    ) -> Dict[str, Any]:
        ip_assessments = [
            {"ip": ip.ip_address, "assessment": self.analyze_ip_threat(ip, events)}
            for ip in ip_tracking
        ]
        user_assessments = [
            {"user_id": u.user_id, "assessment": self.analyze_user_threat(u, events)}
            for u in user_profiles
        ]
        ip_assessments.sort(key=lambda a: a["assessment"].risk_score, reverse=True)
        user_assessments.sort(key=lambda a: a["assessment"].risk_score, reverse=True)

        def count(items, levels) -> int:
            return sum(1 for a in items if a["assessment"].risk_level in levels)

        critical = (count(ip_assessments, CRITICAL_LEVELS)
                    + count(user_assessments, CRITICAL_LEVELS))

        recommendations = _unique(
            rec
            for a in ip_assessments + user_assessments
            for rec in a["assessment"].recommendations
        )

        report = {
            "summary": {
                "total_threats": critical,
                "critical_threats": critical,
                "high_risk_ips": count(ip_assessments, HIGH_RISK_LEVELS),
                "high_risk_users": count(user_assessments, HIGH_RISK_LEVELS),
            },
            "top_threats": {
                "ips": ip_assessments[:top_n],
                "users": user_assessments[:top_n],
            },
            "attack_patterns": self.detect_attack_patterns(events),
            "recommendations": recommendations[:20],
        }
        logger.info(
            "Threat report: %d critical, %d high-risk IPs, %d high-risk users",
            critical, report["summary"]["high_risk_ips"], report["summary"]["high_risk_users"],
        )
        return report

    @staticmethod
    def _assessment(score: int, factors: List[str], recommendations: List[str],
                    actions: List[str]) -> ThreatAssessment:
        score = clamp_score(score)
        return ThreatAssessment(
            risk_level=RiskLevel.from_score(score),
            risk_score=score,
            factors=factors,
            recommendations=_unique(recommendations),
            immediate_actions=_unique(actions),
        )


def report_to_dict(report: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready copy of a threat report."""
    return {
        "summary": dict(report["summary"]),
        "top_threats": {
            "ips": [
                {"ip": a["ip"], "assessment": a["assessment"].to_dict()}
                for a in report["top_threats"]["ips"]
            ],
            "users": [
                {"user_id": a["user_id"], "assessment": a["assessment"].to_dict()}
                for a in report["top_threats"]["users"]
            ],
        },
        "attack_patterns": [p.to_dict() for p in report["attack_patterns"]],
        "recommendations": list(report["recommendations"]),
    }
