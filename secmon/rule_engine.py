# secmon/rule_engine.py

import logging
import os
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from . import evaluators
from .models import SecurityAlert, SecurityContext, SecurityEvent, SecurityRule, Severity, make_id

logger = logging.getLogger(__name__)

ALERT_RETENTION = 7 * 24 * 3600.0
REQUIRED_FIELDS = ("id", "type", "condition", "action")


class RuleEngine:
    def __init__(
        self,
        rule_dir,
        event_store,
        notifier=None,
        defaults: Optional[Dict[str, Any]] = None,
        max_alerts: int = 5000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.rule_dir = Path(rule_dir)
        self.store = event_store
        self.notifier = notifier
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self.defaults.setdefault("block_duration", 3600.0)
        self.max_alerts = max_alerts
        self.clock = clock or event_store.clock
        self.rules: Dict[str, SecurityRule] = {}
        self.alerts: Dict[str, SecurityAlert] = {}
        self._alerts_lock = threading.Lock()
        self._pass = threading.local()

    def load_rules(self) -> int:
        """Load all YAML rules from the rules directory. Returns how many loaded."""
        self.rules.clear()

        if not self.rule_dir.exists():
            logger.warning("Rule directory does not exist: %s", self.rule_dir)
            return 0

        for file in sorted(os.listdir(self.rule_dir)):
            if not file.endswith((".yaml", ".yml")):
                continue

            path = self.rule_dir / file
            try:
                with path.open("r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)

                # Skip empty or invalid YAML
                if not data:
                    logger.warning("Skipping empty rule file: %s", file)
                    continue
                if not isinstance(data, dict):
                    logger.warning("Skipping non dict rule file: %s", file)
                    continue

                missing = [name for name in REQUIRED_FIELDS if name not in data]
                if missing:
                    logger.warning("Skipping rule file %s missing fields: %s", file, missing)
                    continue

                self.add_rule(SecurityRule.from_dict(data))

            except (OSError, yaml.YAMLError, ValueError, KeyError) as e:
                logger.error("Error loading rule file %s: %s", file, e)

        logger.info("Loaded %d security rules from %s", len(self.rules), self.rule_dir)
        return len(self.rules)

    # -------------- rule management --------------

    @staticmethod
    def check_evaluators(rule: SecurityRule) -> None:
        if rule.condition not in evaluators.CONDITIONS:
            raise ValueError(f"Rule {rule.id}: unknown condition {rule.condition!r}")
        if rule.action not in evaluators.ACTIONS:
            raise ValueError(f"Rule {rule.id}: unknown action {rule.action!r}")

    def add_rule(self, rule: SecurityRule) -> None:
        """Add or replace a rule by id. Evaluator names must be registered."""
        self.check_evaluators(rule)
        self.rules[rule.id] = rule
        logger.info("Added/updated security rule: %s", rule.id)

    def remove_rule(self, rule_id: str) -> bool:
        if self.rules.pop(rule_id, None) is None:
            return False
        logger.info("Removed security rule: %s", rule_id)
        return True

    def get_rule(self, rule_id: str) -> Optional[SecurityRule]:
        return self.rules.get(rule_id)

    def get_all_rules(self) -> List[SecurityRule]:
        return list(self.rules.values())

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        logger.info("Rule %s %s", rule_id, "enabled" if enabled else "disabled")
        return True

    # -------------- evaluation --------------

    def matching_rules(self, event: SecurityEvent) -> List[SecurityRule]:
        candidates = [
            rule for rule in list(self.rules.values())
            if rule.enabled and rule.type == event.type
        ]
        # sorted() is stable, so equal priorities keep load order
        return sorted(candidates, key=lambda rule: rule.priority)

    def evaluate_rules(self, event: SecurityEvent, context: SecurityContext) -> List[SecurityAlert]:
        """
        Run every enabled rule bound to the event's type, lowest priority
        number first. A rule that raises is logged and skipped.
        Returns the alerts created during this pass.
        """
        created: List[SecurityAlert] = []
        self._pass.created = created

        for rule in self.matching_rules(event):
            params = {**self.defaults, **rule.params}
            try:
                condition = evaluators.CONDITIONS[rule.condition]
                if not condition(event, context, params):
                    continue

                logger.warning(
                    "Security rule triggered: %s (rule=%s event=%s severity=%s)",
                    rule.name, rule.id, event.id, rule.severity.value,
                )
                evaluators.ACTIONS[rule.action](self, rule, event, context, params)
            except Exception:
                logger.exception("Error evaluating security rule: %s", rule.id)

        self._pass.created = None
        return created

    def block_ip(self, ip_address: str, context: SecurityContext,
                 duration: Optional[float] = None,
                 reason: str = "Automated security block") -> float:
        """Block the IP on its aggregate and in the context. Returns the expiry."""
        if duration is None:
            duration = float(self.defaults["block_duration"])
        blocked_until = self.clock() + duration

        self.store.block_ip(ip_address, blocked_until, reason)
        context.blocked_ips.add(ip_address)

        logger.warning(
            "IP address blocked: %s for %.0f minutes (reason: %s)",
            ip_address, duration / 60, reason,
        )

        if self.notifier is not None:
            self.notifier.persist_block(ip_address, blocked_until, reason)
        return blocked_until

    def create_alert(self, rule_id: str, event: SecurityEvent, severity: Severity,
                     message: str) -> SecurityAlert:
        now = self.clock()
        alert = SecurityAlert(
            id=make_id("alert", now),
            rule_id=rule_id,
            event=event,
            severity=Severity(severity),
            message=message,
            timestamp=now,
        )

        with self._alerts_lock:
            self.alerts[alert.id] = alert
            over_cap = len(self.alerts) > self.max_alerts

        collector = getattr(self._pass, "created", None)
        if collector is not None:
            collector.append(alert)

        if self.notifier is not None:
            self.notifier.send_alert(alert)

        if over_cap:
            self.cleanup_old_alerts(enforce_cap=True)
        return alert

    # -------------- alert management --------------

    def get_alerts(
        self,
        severity=None,
        rule_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        resolved: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityAlert]:
        """Filtered alerts, newest first."""
        with self._alerts_lock:
            alerts = list(self.alerts.values())

        if severity:
            severity = Severity(severity)
            alerts = [a for a in alerts if a.severity == severity]
        if rule_id:
            alerts = [a for a in alerts if a.rule_id == rule_id]
        if acknowledged is not None:
            alerts = [a for a in alerts if a.acknowledged == acknowledged]
        if resolved is not None:
            alerts = [a for a in alerts if a.resolved == resolved]

        alerts.sort(key=lambda a: a.timestamp, reverse=True)
        return alerts[:limit] if limit else alerts

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        with self._alerts_lock:
            alert = self.alerts.get(alert_id)
            if alert is None or alert.acknowledged:
                return False
            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = self.clock()
        logger.info("Alert acknowledged: %s by %s", alert_id, acknowledged_by)
        return True

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        with self._alerts_lock:
            alert = self.alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_by = resolved_by
            alert.resolved_at = self.clock()
        logger.info("Alert resolved: %s by %s", alert_id, resolved_by)
        return True

    def cleanup_old_alerts(self, enforce_cap: bool = False) -> int:
        """Drop alerts older than 7 days; with enforce_cap also trim to max_alerts."""
        cutoff = self.clock() - ALERT_RETENTION
        with self._alerts_lock:
            before = len(self.alerts)
            kept = sorted(
                (a for a in self.alerts.values() if a.timestamp >= cutoff),
                key=lambda a: a.timestamp,
            )
            if enforce_cap:
                kept = kept[-self.max_alerts:]
            self.alerts = {a.id: a for a in kept}
            removed = before - len(self.alerts)
        if removed:
            logger.info("Cleaned up %d old security alerts", removed)
        return removed

    def get_rule_statistics(self) -> Dict[str, Any]:
        rules = list(self.rules.values())
        enabled = [r for r in rules if r.enabled]
        with self._alerts_lock:
            alerts_by_rule = Counter(a.rule_id for a in self.alerts.values())
        return {
            "total_rules": len(rules),
            "enabled_rules": len(enabled),
            "disabled_rules": len(rules) - len(enabled),
            "rules_by_type": dict(Counter(r.type.value for r in rules)),
            "rules_by_severity": dict(Counter(r.severity.value for r in rules)),
            "alerts_by_rule": dict(alerts_by_rule),
        }

    # -------------- export / import --------------

    def export_data(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._alerts_lock:
            alerts = [a.to_dict() for a in self.alerts.values()]
        return {
            "rules": [r.to_dict() for r in self.rules.values()],
            "alerts": alerts,
        }

    def import_data(self, data: Dict[str, Any]) -> None:
        self.apply_import(self.parse_import(data))

    def parse_import(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Decode and validate rules and alerts. Raises before anything is replaced."""
        parsed: Dict[str, Any] = {}
        try:
            if data.get("rules") is not None:
                rules = [SecurityRule.from_dict(r) for r in data["rules"]]
                for rule in rules:
                    self.check_evaluators(rule)
                parsed["rules"] = rules
            if data.get("alerts") is not None:
                parsed["alerts"] = [SecurityAlert.from_dict(a) for a in data["alerts"]]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed rule data: {e}") from e
        return parsed

    def apply_import(self, parsed: Dict[str, Any]) -> None:
        if "rules" in parsed:
            self.rules = {rule.id: rule for rule in parsed["rules"]}
            logger.info("Imported %d security rules", len(self.rules))
        if "alerts" in parsed:
            with self._alerts_lock:
                self.alerts = {a.id: a for a in parsed["alerts"]}
