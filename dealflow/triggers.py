"""Field-equality matching of events against workflow trigger configuration."""

from __future__ import annotations

from typing import Any, Mapping

from .contracts import Workflow


def matches_trigger(
    workflow: Workflow, trigger_type: str, payload: Mapping[str, Any]
) -> bool:
    """Return ``True`` if ``workflow`` should run for this event.

    Trigger types must be equal. Every non-empty value in the workflow's
    trigger config (e.g. ``fromStage``/``toStage``) must equal the payload
    value under the same key; empty values act as wildcards.
    """
    if workflow.trigger_type != trigger_type:
        return False
    for key, expected in workflow.trigger_config.items():
        if expected in (None, ""):
            continue
        if key not in payload:
            return False
        if str(payload[key]) != str(expected):
            return False
    return True
