"""dealflow: trigger, condition and action automation for deal pipelines."""

from .contracts import Action, ActionResult, SweepSummary, TriggerRequest, Workflow, parse_action
from .dispatch import ActionDispatcher
from .engine import AutomationEngine
from .execute import WorkflowExecutor
from .persistence import get_repository
from .sweeper import ScheduledActionSweeper

__version__ = "0.1.0"
__all__ = [
    "Action",
    "ActionDispatcher",
    "ActionResult",
    "AutomationEngine",
    "ScheduledActionSweeper",
    "SweepSummary",
    "TriggerRequest",
    "Workflow",
    "WorkflowExecutor",
    "get_repository",
    "parse_action",
]
