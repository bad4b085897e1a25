"""In-memory implementation of the automation repository."""

from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..contracts import Action, ActionResult, Workflow
from ..exceptions import DealNotFoundError, StoreError
from .models import (
    OUTSTANDING_STATUSES,
    Notification,
    RunStatus,
    ScheduledAction,
    ScheduledActionStatus,
    WorkflowRun,
    derive_run_status,
)
from .repository import AutomationRepository


class InMemoryRepository(AutomationRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._scheduled: Dict[str, ScheduledAction] = {}
        self._notifications: list[Notification] = []
        self._deals: Dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Workflow catalog
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    # Run ledger
    async def create_run(
        self,
        workflow_id: str,
        started_at: datetime,
        trigger_type: str | None = None,
        trigger_data: dict | None = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        self._runs[run_id] = WorkflowRun(
            id=run_id,
            workflow_id=workflow_id,
            trigger_type=trigger_type,
            trigger_data=copy.deepcopy(trigger_data or {}),
            status=RunStatus.RUNNING,
            started_at=started_at,
        )
        return run_id

    async def append_result(self, run_id: str, result: ActionResult) -> None:
        run = self._runs.get(run_id)
        if run is None:
            raise StoreError(f"Workflow run {run_id} not found")
        async with self._lock:
            run.results.append(result.model_copy())

    async def status(self, run_id: str) -> RunStatus | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        return derive_run_status(run.results, await self.count_outstanding(run_id))

    async def settle_run(self, run_id: str, now: datetime) -> RunStatus | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        status = await self.status(run_id)
        run.status = status
        if status != RunStatus.RUNNING and run.completed_at is None:
            run.completed_at = now
        return status

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if workflow_id is None or run.workflow_id == workflow_id
        ]

    # ------------------------------------------------------------------
    # Scheduled action store
    async def enqueue(
        self,
        run_id: str,
        action: Action,
        trigger_data: dict,
        not_before: datetime,
    ) -> str:
        action_id = str(uuid.uuid4())
        self._scheduled[action_id] = ScheduledAction(
            id=action_id,
            workflow_run_id=run_id,
            action=action.model_copy(deep=True),
            trigger_data=copy.deepcopy(trigger_data),
            scheduled_for=not_before,
            status=ScheduledActionStatus.PENDING,
            created_at=datetime.now(timezone.utc),
        )
        return action_id

    def _is_due(self, entry: ScheduledAction, now: datetime) -> bool:
        if entry.status == ScheduledActionStatus.PENDING:
            return entry.scheduled_for <= now
        if entry.status == ScheduledActionStatus.RUNNING:
            return entry.lease_expires_at is not None and entry.lease_expires_at <= now
        return False

    async def claim_due(
        self, limit: int, now: datetime, lease_seconds: int
    ) -> list[ScheduledAction]:
        claimed: list[ScheduledAction] = []
        async with self._lock:
            for entry in self._scheduled.values():
                if len(claimed) >= limit:
                    break
                if not self._is_due(entry, now):
                    continue
                entry.status = ScheduledActionStatus.RUNNING
                entry.attempts += 1
                entry.lease_expires_at = now + timedelta(seconds=lease_seconds)
                claimed.append(entry.model_copy(deep=True))
        return claimed

    async def mark_running(self, action_id: str, now: datetime, lease_seconds: int) -> None:
        entry = self._scheduled.get(action_id)
        if entry:
            entry.status = ScheduledActionStatus.RUNNING
            entry.lease_expires_at = now + timedelta(seconds=lease_seconds)

    async def mark_completed(self, action_id: str, executed_at: datetime) -> None:
        entry = self._scheduled.get(action_id)
        if entry and entry.status == ScheduledActionStatus.RUNNING:
            entry.status = ScheduledActionStatus.COMPLETED
            entry.executed_at = executed_at
            entry.lease_expires_at = None

    async def mark_failed(
        self, action_id: str, error_message: str, executed_at: datetime
    ) -> None:
        entry = self._scheduled.get(action_id)
        if entry and entry.status == ScheduledActionStatus.RUNNING:
            entry.status = ScheduledActionStatus.FAILED
            entry.error_message = error_message
            entry.executed_at = executed_at
            entry.lease_expires_at = None

    async def get_scheduled_action(self, action_id: str) -> ScheduledAction | None:
        entry = self._scheduled.get(action_id)
        return entry.model_copy(deep=True) if entry else None

    async def list_scheduled_actions(
        self, run_id: str | None = None, status: str | None = None
    ) -> list[ScheduledAction]:
        return [
            entry.model_copy(deep=True)
            for entry in self._scheduled.values()
            if (run_id is None or entry.workflow_run_id == run_id)
            and (status is None or entry.status == status)
        ]

    async def count_outstanding(self, run_id: str) -> int:
        return sum(
            1
            for entry in self._scheduled.values()
            if entry.workflow_run_id == run_id and entry.status in OUTSTANDING_STATUSES
        )

    # ------------------------------------------------------------------
    # Notifications and deals
    async def create_notification(self, notification: Notification) -> str:
        stored = notification.model_copy(update={"id": str(uuid.uuid4())})
        self._notifications.append(stored)
        return stored.id

    async def list_notifications(self, user_id: str | None = None) -> list[Notification]:
        return [
            n for n in self._notifications if user_id is None or n.user_id == user_id
        ]

    async def save_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        self._deals[deal_id] = dict(fields)

    async def update_deal_field(self, deal_id: str, field: str, value: Any) -> None:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        deal[field] = value

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        deal = self._deals.get(deal_id)
        return dict(deal) if deal is not None else None
