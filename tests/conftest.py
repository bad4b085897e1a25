"""Shared fixtures: frozen clock, in-memory store, recorded mail and webhooks."""

from datetime import datetime, timezone

import httpx
import pytest

import dealflow.persistence as persistence
from dealflow.clock import FrozenClock
from dealflow.config import DealflowConfig
from dealflow.engine import AutomationEngine
from dealflow.exceptions import MailDeliveryError
from dealflow.persistence import InMemoryRepository

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class RecordingMailSender:
    """Mail sender that keeps messages instead of sending them."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, to, subject, html):
        if self.fail:
            raise MailDeliveryError("Email failed: Bad Gateway", status_code=502)
        self.sent.append({"to": list(to), "subject": subject, "html": html})


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in ("DEALFLOW_CONFIG", "DEALFLOW_DATABASE_URL", "DATABASE_URL", "RESEND_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def outbox():
    return RecordingMailSender()


@pytest.fixture
def webhook_requests():
    return []


@pytest.fixture
def http_client(webhook_requests):
    """HTTP client whose endpoints answer 500 for paths ending in /fail."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        if request.url.path.endswith("/fail"):
            return httpx.Response(500)
        if request.url.path.endswith("/timeout"):
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_engine(repo, clock, outbox, http_client):
    def _make(config: DealflowConfig | None = None, mail=outbox) -> AutomationEngine:
        return AutomationEngine.from_config(
            config or DealflowConfig(),
            repository=repo,
            http_client=http_client,
            clock=clock,
            mail=mail,
        )

    return _make


@pytest.fixture
def failing_outbox():
    return RecordingMailSender(fail=True)
