"""Repository abstractions for engine state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..contracts import Action, ActionResult, Workflow
from .models import Notification, RunStatus, ScheduledAction, WorkflowRun


class WorkflowCatalog(Protocol):
    """Read access to authored workflows."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflows."""


class RunLedger(Protocol):
    """Append-only record of workflow runs and their action results."""

    async def create_run(
        self,
        workflow_id: str,
        started_at: datetime,
        trigger_type: str | None = None,
        trigger_data: dict | None = None,
    ) -> str:
        """Create a run in ``running`` state and return its id."""

    async def append_result(self, run_id: str, result: ActionResult) -> None:
        """Append ``result`` to the run. No deduplication is performed."""

    async def status(self, run_id: str) -> RunStatus | None:
        """Derive the run status from results and outstanding scheduled actions."""

    async def settle_run(self, run_id: str, now: datetime) -> RunStatus | None:
        """Persist the derived status; stamp completion once nothing is outstanding."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run with its results."""

    async def list_runs(self, workflow_id: str | None = None) -> list[WorkflowRun]:
        """Return runs, optionally for one workflow."""


class ScheduledActionStore(Protocol):
    """Durable queue of delayed actions."""

    async def enqueue(
        self,
        run_id: str,
        action: Action,
        trigger_data: dict,
        not_before: datetime,
    ) -> str:
        """Persist a pending scheduled action and return its id."""

    async def claim_due(
        self, limit: int, now: datetime, lease_seconds: int
    ) -> list[ScheduledAction]:
        """Atomically move due entries to ``running`` and return them.

        Due entries are ``pending`` ones with ``scheduled_for <= now`` and
        ``running`` ones whose lease expired before ``now``.
        """

    async def mark_running(self, action_id: str, now: datetime, lease_seconds: int) -> None:
        """Mark an entry running and refresh its lease."""

    async def mark_completed(self, action_id: str, executed_at: datetime) -> None:
        """Finalize a running entry as completed; other entries are left untouched."""

    async def mark_failed(
        self, action_id: str, error_message: str, executed_at: datetime
    ) -> None:
        """Finalize a running entry as failed; other entries are left untouched."""

    async def get_scheduled_action(self, action_id: str) -> ScheduledAction | None:
        """Retrieve a scheduled action by id."""

    async def list_scheduled_actions(
        self, run_id: str | None = None, status: str | None = None
    ) -> list[ScheduledAction]:
        """Return scheduled actions filtered by run and/or status."""

    async def count_outstanding(self, run_id: str) -> int:
        """Number of pending or running entries for ``run_id``."""


class NotificationSink(Protocol):
    """Persisted in-app notifications."""

    async def create_notification(self, notification: Notification) -> str:
        """Store a notification and return its id."""

    async def list_notifications(self, user_id: str | None = None) -> list[Notification]:
        """Return notifications, optionally for one user."""


class DealStore(Protocol):
    """Field-level mutation of deal records."""

    async def update_deal_field(self, deal_id: str, field: str, value: Any) -> None:
        """Set ``field`` on deal ``deal_id``; raise ``DealNotFoundError`` if absent."""

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        """Return the deal's fields."""


class AutomationRepository(
    WorkflowCatalog,
    RunLedger,
    ScheduledActionStore,
    NotificationSink,
    DealStore,
    Protocol,
):
    """Everything the engine persists, served by one backend."""

    async def save_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        """Insert or replace a deal record."""
