"""Immediate execution path tests."""

from datetime import timedelta

import pytest

from dealflow.contracts import TriggerRequest, Workflow, parse_action
from dealflow.exceptions import InactiveWorkflowError, WorkflowNotFoundError
from dealflow.persistence import RunStatus, ScheduledActionStatus


def _workflow(actions, **kwargs) -> Workflow:
    kwargs.setdefault("id", "wf-1")
    kwargs.setdefault("trigger_type", "deal_stage_change")
    return Workflow(actions=[parse_action(a) for a in actions], **kwargs)


@pytest.mark.asyncio
async def test_immediate_actions_run_in_order(repo, make_engine, outbox):
    await repo.save_workflow(
        _workflow(
            [
                {"id": "n1", "type": "send_notification", "config": {"title": "First"}},
                {"id": "e1", "type": "send_email", "config": {"to": "ops@example.com"}},
            ]
        )
    )
    engine = make_engine()

    run_id = await engine.trigger("wf-1", {"userId": "u1"})

    run = await repo.get_run(run_id)
    assert [r.action_id for r in run.results] == ["n1", "e1"]
    assert run.status == RunStatus.COMPLETED
    assert run.trigger_type == "deal_stage_change"
    assert run.completed_at is not None
    assert len(outbox.sent) == 1


@pytest.mark.asyncio
async def test_delayed_action_is_enqueued_without_a_result(repo, make_engine, clock):
    await repo.save_workflow(
        _workflow(
            [
                {"id": "n1", "type": "send_notification"},
                {"id": "e1", "type": "send_email", "delayMinutes": 30},
            ]
        )
    )
    engine = make_engine()

    run_id = await engine.trigger("wf-1", {"companyName": "Acme"})

    run = await repo.get_run(run_id)
    assert [r.action_id for r in run.results] == ["n1"]
    assert run.status == RunStatus.RUNNING
    assert run.completed_at is None
    (entry,) = await repo.list_scheduled_actions(run_id=run_id)
    assert entry.status == ScheduledActionStatus.PENDING
    assert entry.scheduled_for == clock.now() + timedelta(minutes=30)
    assert entry.trigger_data == {"companyName": "Acme"}


@pytest.mark.asyncio
async def test_unmet_condition_skips_action(repo, make_engine, outbox):
    await repo.save_workflow(
        _workflow(
            [
                {
                    "id": "e1",
                    "type": "send_email",
                    "config": {"to": "ops@example.com"},
                    "condition": {"field": "amount", "operator": "greater_than", "value": "1000000"},
                },
                {
                    "id": "e2",
                    "type": "send_email",
                    "delayMinutes": 10,
                    "condition": {"field": "amount", "operator": "greater_than", "value": "1000000"},
                },
            ]
        )
    )
    engine = make_engine()

    run_id = await engine.trigger("wf-1", {"amount": 500})

    run = await repo.get_run(run_id)
    assert [r.message for r in run.results] == ["Skipped: condition not met"] * 2
    assert all(r.success for r in run.results)
    assert run.status == RunStatus.COMPLETED
    assert outbox.sent == []
    assert await repo.list_scheduled_actions(run_id=run_id) == []


@pytest.mark.asyncio
async def test_request_actions_override_catalog(repo, make_engine):
    engine = make_engine()
    request = TriggerRequest.model_validate(
        {
            "workflowId": "adhoc",
            "triggerType": "new_deal",
            "triggerData": {"userId": "u1"},
            "actions": [{"id": "n1", "type": "send_notification"}],
        }
    )

    run_id = await engine.execute(request)

    run = await repo.get_run(run_id)
    assert run.workflow_id == "adhoc"
    assert run.trigger_type == "new_deal"
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_partial_and_failed_runs(repo, make_engine):
    engine = make_engine()
    partial = await engine.execute(
        TriggerRequest(
            workflow_id="adhoc",
            actions=[
                parse_action({"id": "n1", "type": "send_notification"}),
                parse_action({"id": "w1", "type": "webhook"}),
            ],
        )
    )
    failed = await engine.execute(
        TriggerRequest(workflow_id="adhoc", actions=[parse_action({"id": "w1", "type": "webhook"})])
    )
    assert await repo.status(partial) == RunStatus.PARTIAL
    assert await repo.status(failed) == RunStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_and_inactive_workflows_create_no_run(repo, make_engine):
    await repo.save_workflow(_workflow([], id="wf-off", is_active=False))
    engine = make_engine()

    with pytest.raises(WorkflowNotFoundError):
        await engine.trigger("missing")
    with pytest.raises(InactiveWorkflowError):
        await engine.trigger("wf-off")
    assert await repo.list_runs() == []


@pytest.mark.asyncio
async def test_handle_event_runs_matching_active_workflows(repo, make_engine):
    await repo.save_workflow(
        _workflow(
            [{"id": "n1", "type": "send_notification"}],
            id="wf-won",
            trigger_config={"toStage": "won"},
        )
    )
    await repo.save_workflow(
        _workflow(
            [{"id": "n1", "type": "send_notification"}],
            id="wf-any",
            trigger_config={},
        )
    )
    await repo.save_workflow(
        _workflow([], id="wf-off", trigger_config={"toStage": "won"}, is_active=False)
    )
    await repo.save_workflow(_workflow([], id="wf-new", trigger_type="new_deal"))
    engine = make_engine()

    run_ids = await engine.handle_event("deal_stage_change", {"toStage": "won"})

    runs = [await repo.get_run(run_id) for run_id in run_ids]
    assert sorted(r.workflow_id for r in runs) == ["wf-any", "wf-won"]
    assert all(r.trigger_data == {"toStage": "won"} for r in runs)
