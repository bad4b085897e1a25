"""Action dispatcher: one action plus trigger data in, one ActionResult out."""

from __future__ import annotations

import html
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import httpx

from .clock import Clock, SystemClock
from .collaborators import MailSender, validate_webhook_url
from .config import WebhookSettings
from .constants import NIL_DEAL_ID, TEST_DEAL_ID, WEBHOOK_EVENT
from .contracts import (
    Action,
    ActionResult,
    SendEmailAction,
    SendNotificationAction,
    TriggerWorkflowAction,
    UpdateFieldAction,
    WebhookAction,
)
from .exceptions import (
    ChainDepthExceededError,
    ConfigurationError,
    DealflowError,
    InactiveWorkflowError,
    WorkflowNotFoundError,
)
from .persistence.models import Notification
from .persistence.repository import DealStore, NotificationSink
from .templating import substitute

logger = logging.getLogger(__name__)

ChainRunner = Callable[[Action, str, Dict[str, Any]], Awaitable[str]]

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ActionDispatcher:
    """Execute single actions against their collaborators.

    ``dispatch`` never raises: configuration problems and collaborator
    failures both come back as failed :class:`ActionResult` objects tagged
    with an ``error_kind``.
    """

    def __init__(
        self,
        notifications: NotificationSink,
        deals: DealStore,
        *,
        mail: Optional[MailSender] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        webhook_settings: Optional[WebhookSettings] = None,
        test_deal_ids: Iterable[str] = (TEST_DEAL_ID,),
    ) -> None:
        self.notifications = notifications
        self.deals = deals
        self.mail = mail
        self.http_client = http_client
        self.clock = clock or SystemClock()
        self.webhook_settings = webhook_settings or WebhookSettings()
        self.test_deal_ids = set(test_deal_ids)
        self._chain_runner: Optional[ChainRunner] = None
        self._handlers: Dict[str, Callable[[Any, Dict[str, Any]], Awaitable[ActionResult]]] = {
            "send_notification": self._send_notification,
            "send_email": self._send_email,
            "webhook": self._call_webhook,
            "update_field": self._update_field,
            "trigger_workflow": self._trigger_workflow,
        }

    def attach_chain_runner(self, runner: ChainRunner) -> None:
        """Register the callback used by ``trigger_workflow`` actions."""
        self._chain_runner = runner

    async def dispatch(
        self, action: Action, trigger_data: Optional[Dict[str, Any]] = None
    ) -> ActionResult:
        data = trigger_data or {}
        handler = self._handlers.get(action.type)
        if handler is None:
            return ActionResult.failed(
                action, f"Unknown action type: {action.type}", "configuration"
            )
        logger.debug(f"Dispatching {action.type} action {action.id}")
        try:
            result = await handler(action, data)
        except DealflowError as exc:
            result = ActionResult.failed(action, str(exc), exc.error_kind)
        except Exception as exc:
            logger.exception(f"Unexpected error dispatching action {action.id}")
            result = ActionResult.failed(action, f"Action failed: {exc}")
        if result.success:
            logger.info(f"Action {action.id} ({action.type}) succeeded: {result.message}")
        else:
            logger.warning(f"Action {action.id} ({action.type}) failed: {result.message}")
        return result

    # ------------------------------------------------------------------
    async def _send_notification(
        self, action: SendNotificationAction, data: Dict[str, Any]
    ) -> ActionResult:
        title = substitute(action.config.title or "Workflow Notification", data)
        message = substitute(
            action.config.message or "A workflow action was triggered", data
        )
        user_id = data.get("userId")
        if not user_id:
            logger.info(f"Notification '{title}' has no recipient; logged only")
            return ActionResult.ok(action, f"Notification logged: {title}")

        await self.notifications.create_notification(
            Notification(
                user_id=str(user_id),
                deal_id=str(data.get("dealId") or NIL_DEAL_ID),
                title=title,
                message=message,
                created_at=self.clock.now(),
            )
        )
        return ActionResult.ok(action, f"Notification sent: {title}")

    async def _send_email(self, action: SendEmailAction, data: Dict[str, Any]) -> ActionResult:
        subject = substitute(action.config.subject or "Workflow Email", data)
        body = substitute(action.config.body or "A workflow action was triggered", data)
        recipient = action.config.to or data.get("userEmail")
        if not recipient:
            raise ConfigurationError("No recipient email specified")
        if self.mail is None:
            raise ConfigurationError("Email not configured (mail API key missing)")

        recipient = substitute(str(recipient), data)
        content = (
            f"<p>{html.escape(body)}</p>"
            '<p style="color: #888; font-size: 12px; margin-top: 20px;">'
            "This is an automated email from your workflow.</p>"
        )
        await self.mail.send([recipient], subject, content)
        return ActionResult.ok(action, f"Email sent to {recipient}")

    async def _call_webhook(self, action: WebhookAction, data: Dict[str, Any]) -> ActionResult:
        url = action.config.url
        if not url:
            raise ConfigurationError("No webhook URL configured")
        validate_webhook_url(url, self.webhook_settings)

        payload = {
            "event": WEBHOOK_EVENT,
            "timestamp": self.clock.now().isoformat(),
            "data": data,
        }
        headers = {"Content-Type": "application/json", **action.config.headers}
        client = self.http_client or httpx.AsyncClient()
        try:
            response = await client.post(
                url,
                json=payload,
                headers=headers,
                timeout=self.webhook_settings.timeout,
            )
        except httpx.HTTPError as exc:
            return ActionResult.failed(action, f"Webhook failed: {exc}")
        finally:
            if self.http_client is None:
                await client.aclose()

        if not response.is_success:
            return ActionResult.failed(action, f"Webhook returned {response.status_code}")
        return ActionResult.ok(action, f"Webhook called: {url}")

    async def _update_field(self, action: UpdateFieldAction, data: Dict[str, Any]) -> ActionResult:
        deal_id = data.get("dealId")
        if deal_id is not None and str(deal_id) in self.test_deal_ids:
            return ActionResult.ok(action, "Field update skipped (test mode)")

        field = action.config.field
        if not field:
            raise ConfigurationError("No field specified")
        if not _FIELD_NAME.match(field):
            raise ConfigurationError(f"Invalid field name: {field}")
        if not deal_id:
            raise ConfigurationError("No deal ID in trigger data")

        value = action.config.value
        if isinstance(value, str):
            value = substitute(value, data)
        await self.deals.update_deal_field(str(deal_id), field, value)
        return ActionResult.ok(action, f"Updated {field} to {value}")

    async def _trigger_workflow(
        self, action: TriggerWorkflowAction, data: Dict[str, Any]
    ) -> ActionResult:
        target = action.config.workflow_id
        if not target:
            raise ConfigurationError("No target workflow specified")
        if self._chain_runner is None:
            raise ConfigurationError("Workflow chaining is not available")

        try:
            run_id = await self._chain_runner(action, target, data)
        except (WorkflowNotFoundError, InactiveWorkflowError):
            return ActionResult.failed(
                action, "Target workflow not found or inactive", "configuration"
            )
        except ChainDepthExceededError as exc:
            return ActionResult.failed(action, str(exc), exc.error_kind)
        except Exception as exc:
            logger.exception(f"Chained workflow {target} failed")
            return ActionResult.failed(action, f"Chain failed: {exc}")
        return ActionResult.ok(action, f"Triggered workflow {target} (run {run_id})")
