# secmon/evaluators.py
"""
Named rule conditions and actions.

Rules in the YAML rule table refer to these by name, which keeps the rules
themselves plain data. Host applications can add their own with the
``register_condition`` / ``register_action`` decorators.

    condition(event, context, params) -> bool
    action(engine, rule, event, context, params) -> None
"""
import json
from typing import Any, Callable, Dict

from .models import SecurityContext, SecurityEvent, SecurityEventType, SecurityRule, Severity

ConditionFn = Callable[[SecurityEvent, SecurityContext, Dict[str, Any]], bool]
ActionFn = Callable[..., None]

CONDITIONS: Dict[str, ConditionFn] = {}
ACTIONS: Dict[str, ActionFn] = {}


def register_condition(name: str):
    def decorator(fn: ConditionFn) -> ConditionFn:
        CONDITIONS[name] = fn
        return fn
    return decorator


def register_action(name: str):
    def decorator(fn: ActionFn) -> ActionFn:
        ACTIONS[name] = fn
        return fn
    return decorator


def payload_text(payload: Any) -> str:
    """Lower-cased text form of a request payload, for substring matching."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload.lower()
    try:
        return json.dumps(payload, default=str).lower()
    except (TypeError, ValueError):
        return str(payload).lower()


# -------------- conditions --------------

@register_condition("payload_contains")
def payload_contains(event, context, params) -> bool:
    text = payload_text(event.payload)
    if not text:
        return False
    return any(str(p).lower() in text for p in params.get("patterns", []))


@register_condition("failed_login_threshold")
def failed_login_threshold(event, context, params) -> bool:
    info = context.ip_tracking.get(event.ip_address)
    if info is None:
        return False
    return info.failed_logins >= int(params["failed_login_threshold"])


@register_condition("distinct_users_from_ip")
def distinct_users_from_ip(event, context, params) -> bool:
    window = float(params.get("window", 300))
    event_type = SecurityEventType(params.get("event_type", event.type))
    since = context.now - window
    users = {
        e.user_id
        for e in context.recent_events
        if e.type == event_type
        and e.ip_address == event.ip_address
        and e.timestamp > since
        and e.user_id
    }
    return len(users) >= int(params.get("min_users", 10))


def count_recent_from_ip(context: SecurityContext, ip_address: str, window: float) -> int:
    since = context.now - window
    return sum(
        1 for e in context.recent_events
        if e.ip_address == ip_address and e.timestamp > since
    )


@register_condition("request_burst")
def request_burst(event, context, params) -> bool:
    recent = count_recent_from_ip(context, event.ip_address, float(params["rate_limit_window"]))
    return recent > int(params["rate_limit_requests"])


@register_condition("admin_endpoint_without_role")
def admin_endpoint_without_role(event, context, params) -> bool:
    endpoint = event.endpoint or ""
    if not endpoint.startswith(params.get("path_prefix", "/api/admin")):
        return False
    role = (event.metadata or {}).get(params.get("role_key", "userRole"))
    return role != params.get("required_role", "admin")


@register_condition("new_login_location")
def new_login_location(event, context, params) -> bool:
    # the store flags the login as new_location when the IP was not yet known
    if not event.user_id:
        return False
    profile = context.user_profiles.get(event.user_id)
    if profile is None:
        return False
    return event.id in profile.new_location_event_ids()


# -------------- actions --------------

def render_message(rule: SecurityRule, event: SecurityEvent,
                   context: SecurityContext, params: Dict[str, Any]) -> str:
    info = context.ip_tracking.get(event.ip_address)
    fields = {
        "rule": rule.name,
        "ip": event.ip_address,
        "user": event.user_id or "anonymous",
        "endpoint": event.endpoint or "",
        "event_type": event.type.value,
        "failed_logins": info.failed_logins if info else 0,
        "recent_requests": count_recent_from_ip(
            context, event.ip_address, float(params.get("rate_limit_window", 60))
        ),
    }
    template = params.get("message") or "{rule} triggered by {ip}"
    return template.format(**fields)


@register_action("alert")
def alert(engine, rule, event, context, params) -> None:
    severity = Severity(params.get("alert_severity", rule.severity))
    engine.create_alert(rule.id, event, severity, render_message(rule, event, context, params))


@register_action("block_and_alert")
def block_and_alert(engine, rule, event, context, params) -> None:
    engine.block_ip(
        event.ip_address,
        context,
        duration=float(params["block_duration"]),
        reason=params.get("block_reason", f"Automated security block: {rule.id}"),
    )
    alert(engine, rule, event, context, params)
