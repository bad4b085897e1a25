"""Wiring of repository, dispatcher, executor and sweeper from configuration."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .clock import Clock, SystemClock
from .collaborators import MailSender, ResendMailSender
from .config import DealflowConfig, load_config
from .contracts import SweepSummary, TriggerRequest
from .dispatch import ActionDispatcher
from .execute import WorkflowExecutor
from .persistence import AutomationRepository, get_repository
from .sweeper import ScheduledActionSweeper

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Facade holding one fully wired engine.

    Use as an async context manager so the shared HTTP client is closed::

        async with AutomationEngine.from_config() as engine:
            await engine.trigger("wf-1", {"dealId": "d-1"})
    """

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: ActionDispatcher,
        executor: WorkflowExecutor,
        sweeper: ScheduledActionSweeper,
        http_client: Optional[httpx.AsyncClient] = None,
        owns_client: bool = False,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.executor = executor
        self.sweeper = sweeper
        self._http_client = http_client
        self._owns_client = owns_client

    @classmethod
    def from_config(
        cls,
        config: Optional[DealflowConfig] = None,
        repository: Optional[AutomationRepository] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        mail: Optional[MailSender] = None,
    ) -> "AutomationEngine":
        config = config or load_config()
        repository = repository or get_repository(config=config)
        clock = clock or SystemClock()
        owns_client = http_client is None
        http_client = http_client or httpx.AsyncClient()
        mail = mail or ResendMailSender.from_config(config.mail, client=http_client)
        if mail is None:
            logger.info("Mail API key not configured; send_email actions will fail")

        dispatcher = ActionDispatcher(
            repository,
            repository,
            mail=mail,
            http_client=http_client,
            clock=clock,
            webhook_settings=config.webhooks,
            test_deal_ids=config.engine.test_deal_ids,
        )
        executor = WorkflowExecutor(
            repository,
            dispatcher,
            clock=clock,
            max_chain_depth=config.engine.max_chain_depth,
        )
        sweeper = ScheduledActionSweeper(
            repository, dispatcher, clock=clock, config=config.sweeper, mail=mail
        )
        return cls(repository, dispatcher, executor, sweeper, http_client, owns_client)

    async def execute(self, request: TriggerRequest) -> str:
        return await self.executor.execute(request)

    async def trigger(
        self, workflow_id: str, trigger_data: Optional[Dict[str, Any]] = None
    ) -> str:
        return await self.executor.trigger(workflow_id, trigger_data)

    async def handle_event(
        self, trigger_type: str, payload: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        return await self.executor.handle_event(trigger_type, payload)

    async def sweep(self) -> SweepSummary:
        return await self.sweeper.sweep()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "AutomationEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
