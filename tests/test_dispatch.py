"""Action dispatcher tests."""

import json

import pytest

from dealflow.config import WebhookSettings
from dealflow.contracts import parse_action
from dealflow.dispatch import ActionDispatcher


def _dispatcher(repo, clock, outbox=None, http_client=None, **kwargs) -> ActionDispatcher:
    return ActionDispatcher(
        repo, repo, mail=outbox, http_client=http_client, clock=clock, **kwargs
    )


@pytest.mark.asyncio
async def test_notification_persisted_for_user(repo, clock):
    action = parse_action(
        {
            "id": "n1",
            "type": "send_notification",
            "config": {"title": "Deal {{dealName}}", "message": "Moved to {{toStage}}"},
        }
    )
    result = await _dispatcher(repo, clock).dispatch(
        action, {"userId": "u1", "dealId": "d1", "dealName": "Acme", "toStage": "won"}
    )

    assert result.success
    assert result.message == "Notification sent: Deal Acme"
    (notification,) = await repo.list_notifications("u1")
    assert notification.deal_id == "d1"
    assert notification.alert_type == "workflow"
    assert notification.message == "Moved to won"
    assert notification.created_at == clock.now()


@pytest.mark.asyncio
async def test_notification_without_recipient_is_logged_only(repo, clock):
    action = parse_action({"id": "n1", "type": "send_notification"})
    result = await _dispatcher(repo, clock).dispatch(action, {})
    assert result.success
    assert "Workflow Notification" in result.message
    assert await repo.list_notifications() == []


@pytest.mark.asyncio
async def test_email_uses_config_recipient_and_templates(repo, clock, outbox):
    action = parse_action(
        {
            "id": "e1",
            "type": "send_email",
            "config": {"subject": "About {{companyName}}", "body": "Hi {{companyName}}", "to": "ops@example.com"},
        }
    )
    result = await _dispatcher(repo, clock, outbox).dispatch(
        action, {"companyName": "Acme", "userEmail": "user@example.com"}
    )

    assert result.success
    assert result.message == "Email sent to ops@example.com"
    (mail,) = outbox.sent
    assert mail["to"] == ["ops@example.com"]
    assert mail["subject"] == "About Acme"
    assert "Hi Acme" in mail["html"]


@pytest.mark.asyncio
async def test_email_falls_back_to_user_email(repo, clock, outbox):
    action = parse_action({"id": "e1", "type": "send_email"})
    result = await _dispatcher(repo, clock, outbox).dispatch(action, {"userEmail": "user@example.com"})
    assert result.success
    assert outbox.sent[0]["to"] == ["user@example.com"]
    assert outbox.sent[0]["subject"] == "Workflow Email"


@pytest.mark.asyncio
async def test_email_failures(repo, clock, outbox, failing_outbox):
    action = parse_action({"id": "e1", "type": "send_email"})

    no_recipient = await _dispatcher(repo, clock, outbox).dispatch(action, {})
    assert not no_recipient.success
    assert no_recipient.message == "No recipient email specified"
    assert no_recipient.error_kind == "configuration"

    no_mail = await _dispatcher(repo, clock, None).dispatch(action, {"userEmail": "u@example.com"})
    assert not no_mail.success
    assert no_mail.error_kind == "configuration"

    rejected = await _dispatcher(repo, clock, failing_outbox).dispatch(
        action, {"userEmail": "u@example.com"}
    )
    assert not rejected.success
    assert rejected.error_kind == "collaborator"
    assert "Bad Gateway" in rejected.message


@pytest.mark.asyncio
async def test_webhook_posts_envelope(repo, clock, http_client, webhook_requests):
    action = parse_action(
        {
            "id": "w1",
            "type": "webhook",
            "config": {"url": "https://hooks.example.com/deal", "headers": {"X-Token": "abc"}},
        }
    )
    result = await _dispatcher(repo, clock, http_client=http_client).dispatch(
        action, {"dealId": "d1"}
    )

    assert result.success
    assert result.message == "Webhook called: https://hooks.example.com/deal"
    (request,) = webhook_requests
    assert request.method == "POST"
    assert request.headers["X-Token"] == "abc"
    body = json.loads(request.content)
    assert body == {
        "event": "delayed_workflow_action",
        "timestamp": clock.now().isoformat(),
        "data": {"dealId": "d1"},
    }


@pytest.mark.asyncio
async def test_webhook_failures(repo, clock, http_client, webhook_requests):
    dispatcher = _dispatcher(repo, clock, http_client=http_client)

    missing = await dispatcher.dispatch(parse_action({"id": "w1", "type": "webhook"}), {})
    assert missing.message == "No webhook URL configured"
    assert missing.error_kind == "configuration"

    status = await dispatcher.dispatch(
        parse_action({"id": "w2", "type": "webhook", "config": {"url": "https://hooks.example.com/fail"}}),
        {},
    )
    assert not status.success
    assert status.message == "Webhook returned 500"

    timeout = await dispatcher.dispatch(
        parse_action({"id": "w3", "type": "webhook", "config": {"url": "https://hooks.example.com/timeout"}}),
        {},
    )
    assert not timeout.success
    assert timeout.message.startswith("Webhook failed")
    assert len(webhook_requests) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    [
        "http://hooks.example.com/deal",
        "https://localhost/hook",
        "https://127.0.0.1/hook",
        "https://10.1.2.3/hook",
        "https://169.254.169.254/latest/meta-data",
        "https://metadata.google.internal/computeMetadata",
        "not a url",
    ],
)
async def test_webhook_rejects_internal_targets(repo, clock, http_client, webhook_requests, url):
    action = parse_action({"id": "w1", "type": "webhook", "config": {"url": url}})
    result = await _dispatcher(repo, clock, http_client=http_client).dispatch(action, {})
    assert not result.success
    assert result.error_kind == "configuration"
    assert result.message.startswith("Invalid webhook URL")
    assert webhook_requests == []


@pytest.mark.asyncio
async def test_webhook_private_hosts_can_be_allowed(repo, clock, http_client):
    action = parse_action({"id": "w1", "type": "webhook", "config": {"url": "http://10.0.0.5/hook"}})
    settings = WebhookSettings(require_https=False, allow_private_hosts=True)
    result = await _dispatcher(
        repo, clock, http_client=http_client, webhook_settings=settings
    ).dispatch(action, {})
    assert result.success


@pytest.mark.asyncio
async def test_update_field(repo, clock):
    await repo.save_deal("d1", {"stage": "lead"})
    action = parse_action(
        {"id": "u1", "type": "update_field", "config": {"field": "stage", "value": "{{toStage}}"}}
    )
    result = await _dispatcher(repo, clock).dispatch(action, {"dealId": "d1", "toStage": "won"})
    assert result.success
    assert await repo.get_deal("d1") == {"stage": "won"}


@pytest.mark.asyncio
async def test_update_field_test_deal_is_a_no_op(repo, clock):
    action = parse_action({"id": "u1", "type": "update_field", "config": {}})
    result = await _dispatcher(repo, clock).dispatch(action, {"dealId": "test-deal-id"})
    assert result.success
    assert "test mode" in result.message


@pytest.mark.asyncio
async def test_update_field_failures(repo, clock):
    dispatcher = _dispatcher(repo, clock)

    no_field = await dispatcher.dispatch(
        parse_action({"id": "u1", "type": "update_field", "config": {"value": 1}}), {"dealId": "d1"}
    )
    assert no_field.message == "No field specified"

    bad_field = await dispatcher.dispatch(
        parse_action({"id": "u2", "type": "update_field", "config": {"field": "stage; drop", "value": 1}}),
        {"dealId": "d1"},
    )
    assert bad_field.error_kind == "configuration"

    no_deal = await dispatcher.dispatch(
        parse_action({"id": "u3", "type": "update_field", "config": {"field": "stage", "value": 1}}), {}
    )
    assert not no_deal.success
    assert no_deal.error_kind == "configuration"

    missing_deal = await dispatcher.dispatch(
        parse_action({"id": "u4", "type": "update_field", "config": {"field": "stage", "value": 1}}),
        {"dealId": "nope"},
    )
    assert not missing_deal.success
    assert missing_deal.message == "Deal nope not found"
    assert missing_deal.error_kind == "collaborator"


@pytest.mark.asyncio
async def test_trigger_workflow_without_chain_runner(repo, clock):
    dispatcher = _dispatcher(repo, clock)
    missing = await dispatcher.dispatch(parse_action({"id": "c1", "type": "trigger_workflow"}), {})
    assert missing.message == "No target workflow specified"

    unwired = await dispatcher.dispatch(
        parse_action({"id": "c2", "type": "trigger_workflow", "config": {"workflowId": "wf-2"}}), {}
    )
    assert not unwired.success


@pytest.mark.asyncio
async def test_dispatch_never_raises_on_collaborator_bug(repo, clock):
    class BrokenSink:
        async def create_notification(self, notification):
            raise RuntimeError("sink down")

    dispatcher = ActionDispatcher(BrokenSink(), repo, clock=clock)
    result = await dispatcher.dispatch(parse_action({"id": "n1", "type": "send_notification"}), {"userId": "u1"})
    assert not result.success
    assert "sink down" in result.message
