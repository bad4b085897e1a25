"""Immediate execution path for triggered workflows."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from .clock import Clock, SystemClock
from .conditions import evaluate_condition
from .constants import DEFAULT_MAX_CHAIN_DEPTH
from .contracts import Action, ActionResult, TriggerRequest, TriggerType
from .dispatch import ActionDispatcher
from .exceptions import ChainDepthExceededError, InactiveWorkflowError, WorkflowNotFoundError
from .persistence.repository import AutomationRepository
from .triggers import matches_trigger

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """Create runs and execute or schedule their actions."""

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: ActionDispatcher,
        clock: Optional[Clock] = None,
        max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self.max_chain_depth = max_chain_depth
        dispatcher.attach_chain_runner(self._execute_chained)

    async def execute(self, request: TriggerRequest) -> str:
        """Run ``request`` and return the id of the created workflow run.

        Actions without a delay are dispatched in order and their results
        appended before this returns. Delayed actions are enqueued for the
        sweeper and contribute no result yet.

        Raises:
            InactiveWorkflowError: the workflow exists but is switched off.
            WorkflowNotFoundError: the workflow is unknown and the request
                carries no actions of its own.
        """
        workflow = await self._repository.get_workflow(request.workflow_id)
        if workflow is not None and not workflow.is_active:
            raise InactiveWorkflowError(request.workflow_id)
        if workflow is None and request.actions is None:
            raise WorkflowNotFoundError(request.workflow_id)

        actions: List[Action] = (
            request.actions if request.actions is not None else workflow.actions
        )
        trigger_type = request.trigger_type or (
            workflow.trigger_type.value if workflow is not None else None
        )
        trigger_data = copy.deepcopy(request.trigger_data)

        run_id = await self._repository.create_run(
            request.workflow_id,
            self._clock.now(),
            trigger_type=trigger_type,
            trigger_data=trigger_data,
        )
        logger.info(
            f"Started run {run_id} for workflow {request.workflow_id} "
            f"({len(actions)} actions, trigger={trigger_type})"
        )

        for action in actions:
            await self._run_action(run_id, action, trigger_data)

        status = await self._repository.settle_run(run_id, self._clock.now())
        logger.info(f"Run {run_id} is {status.value if status else 'unknown'}")
        return run_id

    async def _run_action(
        self, run_id: str, action: Action, trigger_data: Dict[str, Any]
    ) -> None:
        if action.condition is not None and not evaluate_condition(
            action.condition, trigger_data
        ):
            logger.debug(f"Skipping action {action.id}: condition not met")
            await self._repository.append_result(
                run_id, ActionResult.ok(action, "Skipped: condition not met")
            )
            return

        delay = action.effective_delay
        if delay is not None:
            not_before = self._clock.now() + delay
            scheduled_id = await self._repository.enqueue(
                run_id, action, copy.deepcopy(trigger_data), not_before
            )
            logger.info(
                f"Scheduled action {action.id} as {scheduled_id} for {not_before.isoformat()}"
            )
            return

        result = await self._dispatcher.dispatch(action, trigger_data)
        await self._repository.append_result(run_id, result)

    async def trigger(
        self, workflow_id: str, trigger_data: Optional[Dict[str, Any]] = None
    ) -> str:
        """Run a catalog workflow with its own trigger type and actions."""
        return await self.execute(
            TriggerRequest(workflow_id=workflow_id, trigger_data=trigger_data or {})
        )

    async def handle_event(
        self, trigger_type: str, payload: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        """Run every active workflow whose trigger matches the event."""
        payload = payload or {}
        run_ids: List[str] = []
        for workflow in await self._repository.list_workflows():
            if not workflow.is_active or not matches_trigger(workflow, trigger_type, payload):
                continue
            run_ids.append(
                await self.execute(
                    TriggerRequest(
                        workflow_id=workflow.id,
                        trigger_type=trigger_type,
                        trigger_data=payload,
                    )
                )
            )
        logger.info(f"Event {trigger_type} started {len(run_ids)} run(s)")
        return run_ids

    async def _execute_chained(
        self, action: Action, target_workflow_id: str, trigger_data: Dict[str, Any]
    ) -> str:
        depth = int(trigger_data.get("chainDepth") or 0) + 1
        if depth > self.max_chain_depth:
            raise ChainDepthExceededError(depth, self.max_chain_depth)

        # Chain targets must exist in the catalog; inline actions are not allowed.
        target = await self._repository.get_workflow(target_workflow_id)
        if target is None:
            raise WorkflowNotFoundError(target_workflow_id)

        chained_data = {
            **trigger_data,
            "chainedFrom": action.id,
            "isChained": True,
            "chainDepth": depth,
        }
        logger.info(
            f"Action {action.id} chaining into workflow {target_workflow_id} at depth {depth}"
        )
        return await self.execute(
            TriggerRequest(
                workflow_id=target_workflow_id,
                trigger_type=TriggerType.CHAINED.value,
                trigger_data=chained_data,
            )
        )
