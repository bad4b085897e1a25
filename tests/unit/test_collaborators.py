import json

import httpx
import pytest

from dealflow.collaborators import ResendMailSender, validate_webhook_url
from dealflow.config import MailConfig, WebhookSettings
from dealflow.exceptions import ConfigurationError, MailDeliveryError


def _client(status: int, captured: list) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status, json={"message": "nope"} if status >= 400 else {"id": "1"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_resend_sender_posts_message():
    captured = []
    sender = ResendMailSender(
        "re_key",
        api_url="https://mail.example.com/emails",
        from_address="Deals <deals@example.com>",
        client=_client(200, captured),
    )

    await sender.send(["a@example.com", "b@example.com"], "Subject", "<p>Body</p>")

    (request,) = captured
    assert request.headers["Authorization"] == "Bearer re_key"
    assert json.loads(request.content) == {
        "from": "Deals <deals@example.com>",
        "to": ["a@example.com", "b@example.com"],
        "subject": "Subject",
        "html": "<p>Body</p>",
    }


@pytest.mark.asyncio
async def test_resend_sender_raises_on_error_status():
    sender = ResendMailSender("re_key", client=_client(422, []))
    with pytest.raises(MailDeliveryError) as exc_info:
        await sender.send(["a@example.com"], "Subject", "<p>Body</p>")
    assert exc_info.value.status_code == 422


def test_sender_from_config_requires_api_key():
    assert ResendMailSender.from_config(MailConfig()) is None
    sender = ResendMailSender.from_config(MailConfig(api_key="re_key", timeout=3))
    assert sender.api_key == "re_key"
    assert sender.timeout == 3


def test_validate_webhook_url_accepts_public_https():
    validate_webhook_url("https://hooks.zapier.com/hooks/catch/1/abc")
    validate_webhook_url("https://93.184.216.34/hook")


@pytest.mark.parametrize(
    "url",
    ["https://192.168.1.10/x", "https://[::1]/x", "https://0.0.0.0/x", "ftp://example.com/x"],
)
def test_validate_webhook_url_rejects(url):
    with pytest.raises(ConfigurationError):
        validate_webhook_url(url)


def test_validate_webhook_url_http_allowed_when_configured():
    validate_webhook_url("http://example.com/x", WebhookSettings(require_https=False))
