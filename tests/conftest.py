# tests/conftest.py
import pytest

from secmon.config import MonitorConfig
from secmon.event_tracker import EventStore
from secmon.monitor import SecurityMonitor
from secmon.notifier import AlertNotifier

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class StubResponse:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")


class StubSession:
    """Stands in for requests.Session; records every POST."""

    def __init__(self, status_code: int = 200, error: Exception = None):
        self.status_code = status_code
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return StubResponse(self.status_code)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return StubSession()


@pytest.fixture
def store(clock):
    return EventStore(clock=clock)


@pytest.fixture
def config():
    return MonitorConfig(
        enabled=True,
        webhook_url="http://alerts.test/hook",
        chat_webhook_url="http://chat.test/hook",
        block_persist_url="http://blocks.test/persist",
    )


@pytest.fixture
def notifier(config, session, clock):
    # never started: tests drain it with process_pending()
    return AlertNotifier.from_config(config, session=session, clock=clock)


@pytest.fixture
def monitor(config, notifier, clock):
    return SecurityMonitor(config, notifier=notifier, clock=clock)
