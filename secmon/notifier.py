# secmon/notifier.py
"""
Best-effort outbound delivery: alert webhooks, chat messages for critical
alerts, and IP block persistence.

Callers only enqueue. A single daemon worker drains the queue, posts with a
short timeout, retries a bounded number of times and then drops the job.
Nothing here ever raises back into rule evaluation.
"""
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .models import SecurityAlert, Severity

logger = logging.getLogger(__name__)

Job = Tuple[str, Callable[[], None]]

_STOP = object()


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def alert_envelope(alert: SecurityAlert, service: str, now: float) -> Dict[str, Any]:
    return {
        "type": "security_alert",
        "alert": alert.to_dict(),
        "timestamp": now,
        "service": service,
    }


def chat_message(alert: SecurityAlert, channel: str) -> Dict[str, Any]:
    event = alert.event
    return {
        "channel": channel,
        "text": f"CRITICAL SECURITY ALERT: {alert.message}",
        "attachments": [
            {
                "color": "danger",
                "fields": [
                    {"title": "Rule", "value": alert.rule_id, "short": True},
                    {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                    {"title": "IP Address", "value": event.ip_address, "short": True},
                    {"title": "User ID", "value": event.user_id or "Anonymous", "short": True},
                    {"title": "Event Type", "value": event.type.value, "short": True},
                    {"title": "Timestamp", "value": iso(alert.timestamp), "short": True},
                ],
            }
        ],
    }


class AlertNotifier:
    def __init__(
        self,
        webhook_url: Optional[str] = None,
        chat_webhook_url: Optional[str] = None,
        chat_channel: str = "#security-alerts",
        block_persist_url: Optional[str] = None,
        block_sink: Optional[Callable[[str, float, str], None]] = None,
        alert_sink: Optional[Callable[[SecurityAlert], None]] = None,
        service_name: str = "secmon",
        timeout: float = 5.0,
        max_attempts: int = 2,
        queue_size: int = 1000,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.webhook_url = webhook_url
        self.chat_webhook_url = chat_webhook_url
        self.chat_channel = chat_channel
        self.block_persist_url = block_persist_url
        self.block_sink = block_sink
        self.alert_sink = alert_sink
        self.service_name = service_name
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.session = session or requests.Session()
        self.clock = clock

        self.delivered = 0
        self.failed = 0
        self.dropped = 0

        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, config, block_sink=None, alert_sink=None, session=None,
                    clock=time.time) -> "AlertNotifier":
        return cls(
            webhook_url=config.webhook_url,
            chat_webhook_url=config.chat_webhook_url,
            chat_channel=config.chat_channel,
            block_persist_url=config.block_persist_url,
            block_sink=block_sink,
            alert_sink=alert_sink,
            service_name=config.service_name,
            timeout=config.notify_timeout,
            max_attempts=config.notify_max_attempts,
            queue_size=config.notify_queue_size,
            session=session,
            clock=clock,
        )

    # -------------- lifecycle --------------

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="secmon-notifier", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        worker = self._worker
        if worker is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Notifier queue full on shutdown, worker not signalled")
        worker.join(timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._deliver(job)
            finally:
                self._queue.task_done()

    def process_pending(self) -> int:
        """Deliver everything queued on the calling thread. Returns jobs handled."""
        handled = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                if job is not _STOP:
                    self._deliver(job)
                    handled += 1
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()

    # -------------- enqueue --------------

    def _enqueue(self, description: str, send: Callable[[], None]) -> bool:
        try:
            self._queue.put_nowait((description, send))
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning("Notifier queue full, dropping %s", description)
            return False

    def send_alert(self, alert: SecurityAlert) -> None:
        """Queue webhook delivery, plus a chat message when the alert is critical."""
        if self.webhook_url:
            now = self.clock()
            self._enqueue(
                f"webhook for alert {alert.id}",
                lambda: self._post(self.webhook_url, alert_envelope(alert, self.service_name, now)),
            )
        if alert.severity == Severity.CRITICAL and self.chat_webhook_url:
            self._enqueue(
                f"chat message for alert {alert.id}",
                lambda: self._post(self.chat_webhook_url, chat_message(alert, self.chat_channel)),
            )
        if self.alert_sink is not None:
            sink = self.alert_sink
            self._enqueue(f"local record for alert {alert.id}", lambda: sink(alert))

    def persist_block(self, ip_address: str, blocked_until: float, reason: str) -> None:
        if self.block_persist_url:
            body = {"ipAddress": ip_address, "blockedUntil": blocked_until, "reason": reason}
            self._enqueue(
                f"block persistence for {ip_address}",
                lambda: self._post(self.block_persist_url, body),
            )
        if self.block_sink is not None:
            sink = self.block_sink
            self._enqueue(
                f"local block record for {ip_address}",
                lambda: sink(ip_address, blocked_until, reason),
            )

    # -------------- delivery --------------

    def _post(self, url: str, body: Dict[str, Any]) -> None:
        response = self.session.post(url, json=body, timeout=self.timeout)
        response.raise_for_status()

    def _deliver(self, job: Job) -> bool:
        description, send = job
        errors: List[str] = []
        for attempt in range(1, self.max_attempts + 1):
            try:
                send()
                self.delivered += 1
                return True
            except Exception as e:
                errors.append(f"attempt {attempt}: {e}")
        self.failed += 1
        logger.error("Giving up on %s: %s", description, "; ".join(errors))
        return False

    def get_stats(self) -> Dict[str, int]:
        return {
            "pending": self.pending(),
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
        }
