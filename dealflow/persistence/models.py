"""Data models for persisted engine state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import Field

from ..constants import NIL_DEAL_ID, NOTIFICATION_ALERT_TYPE
from ..contracts import Action, ActionResult, WireModel


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING_STATUSES = (ScheduledActionStatus.PENDING, ScheduledActionStatus.RUNNING)


def derive_run_status(results: Iterable[ActionResult], outstanding: int) -> RunStatus:
    """Compute a run's status from its recorded results.

    A run with scheduled actions still pending or running is ``running``. A
    settled run with no results at all counts as ``completed``.
    """
    if outstanding > 0:
        return RunStatus.RUNNING
    flags = [r.success for r in results]
    if all(flags):
        return RunStatus.COMPLETED
    if not any(flags):
        return RunStatus.FAILED
    return RunStatus.PARTIAL


class WorkflowRun(WireModel):
    """One trigger-to-completion execution of a workflow."""

    id: str
    workflow_id: str
    trigger_type: Optional[str] = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: list[ActionResult] = Field(default_factory=list)


class ScheduledAction(WireModel):
    """A delayed action waiting for the sweeper."""

    id: str
    workflow_run_id: str
    action: Action
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    attempts: int = 0
    lease_expires_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class Notification(WireModel):
    """In-app notification written by ``send_notification`` actions."""

    id: Optional[str] = None
    user_id: str
    deal_id: str = NIL_DEAL_ID
    alert_type: str = NOTIFICATION_ALERT_TYPE
    title: str
    message: str
    created_at: Optional[datetime] = None
