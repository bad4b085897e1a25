"""Core contracts for dealflow workflows, actions and their outcomes."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model that reads and writes camelCase keys.

    snake_case field names are accepted on input as well so records coming
    from the database and payloads coming over the wire validate alike.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TriggerType(str, Enum):
    DEAL_STAGE_CHANGE = "deal_stage_change"
    LENDER_STAGE_CHANGE = "lender_stage_change"
    NEW_DEAL = "new_deal"
    DEAL_CLOSED = "deal_closed"
    SCHEDULED = "scheduled"
    CHAINED = "chained"


class ActionType(str, Enum):
    SEND_NOTIFICATION = "send_notification"
    SEND_EMAIL = "send_email"
    WEBHOOK = "webhook"
    UPDATE_FIELD = "update_field"
    TRIGGER_WORKFLOW = "trigger_workflow"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class ActionCondition(WireModel):
    """Guard evaluated against trigger data before an action runs."""

    # YAML and JSON authors write thresholds as bare numbers.
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True
    )

    field: str
    operator: ConditionOperator
    value: str


class ActionDelay(WireModel):
    amount: int = Field(ge=0)
    unit: DelayUnit = DelayUnit.MINUTES

    def to_timedelta(self) -> timedelta:
        if self.unit == DelayUnit.HOURS:
            return timedelta(hours=self.amount)
        if self.unit == DelayUnit.DAYS:
            return timedelta(days=self.amount)
        return timedelta(minutes=self.amount)


# ----------------------------------------------------------------------
# Per-type action configuration. Every field is optional: a missing value is
# a configuration error reported through a failed ActionResult, not a
# validation failure.
class NotificationConfig(WireModel):
    title: Optional[str] = None
    message: Optional[str] = None


class EmailConfig(WireModel):
    subject: Optional[str] = None
    body: Optional[str] = None
    to: Optional[str] = None


class WebhookConfig(WireModel):
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class UpdateFieldConfig(WireModel):
    field: Optional[str] = None
    value: Any = None


class TriggerWorkflowConfig(WireModel):
    workflow_id: Optional[str] = None


class ActionBase(WireModel):
    """Fields shared by every action variant."""

    id: str
    delay_minutes: Optional[int] = Field(default=None, ge=0)
    delay: Optional[ActionDelay] = None
    condition: Optional[ActionCondition] = None

    @property
    def effective_delay(self) -> Optional[timedelta]:
        """Delay before execution, or ``None`` for immediate dispatch."""
        if self.delay_minutes is not None:
            delta = timedelta(minutes=self.delay_minutes)
        elif self.delay is not None:
            delta = self.delay.to_timedelta()
        else:
            return None
        return delta if delta > timedelta(0) else None


class SendNotificationAction(ActionBase):
    type: Literal["send_notification"] = "send_notification"
    config: NotificationConfig = Field(default_factory=NotificationConfig)


class SendEmailAction(ActionBase):
    type: Literal["send_email"] = "send_email"
    config: EmailConfig = Field(default_factory=EmailConfig)


class WebhookAction(ActionBase):
    type: Literal["webhook"] = "webhook"
    config: WebhookConfig = Field(default_factory=WebhookConfig)


class UpdateFieldAction(ActionBase):
    type: Literal["update_field"] = "update_field"
    config: UpdateFieldConfig = Field(default_factory=UpdateFieldConfig)


class TriggerWorkflowAction(ActionBase):
    type: Literal["trigger_workflow"] = "trigger_workflow"
    config: TriggerWorkflowConfig = Field(default_factory=TriggerWorkflowConfig)


Action = Annotated[
    Union[
        SendNotificationAction,
        SendEmailAction,
        WebhookAction,
        UpdateFieldAction,
        TriggerWorkflowAction,
    ],
    Field(discriminator="type"),
]

ACTION_ADAPTER: TypeAdapter[Action] = TypeAdapter(Action)


def parse_action(data: dict[str, Any]) -> Action:
    """Validate a raw action definition into its typed variant."""
    return ACTION_ADAPTER.validate_python(data)


class Workflow(WireModel):
    """A stored automation rule."""

    id: str
    name: str = ""
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    actions: List[Action] = Field(default_factory=list)
    is_active: bool = True


class ActionResult(WireModel):
    """Outcome of executing one action."""

    action_id: str
    type: ActionType
    success: bool
    message: str
    error_kind: Optional[str] = None

    @classmethod
    def ok(cls, action: Action, message: str) -> "ActionResult":
        return cls(action_id=action.id, type=action.type, success=True, message=message)

    @classmethod
    def failed(
        cls, action: Action, message: str, error_kind: str = "collaborator"
    ) -> "ActionResult":
        return cls(
            action_id=action.id,
            type=action.type,
            success=False,
            message=message,
            error_kind=error_kind,
        )


class TriggerRequest(WireModel):
    """Trigger ingestion payload.

    ``actions`` and ``trigger_type`` may be omitted, in which case the
    workflow's catalog definition supplies them.
    """

    workflow_id: str
    trigger_type: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    actions: Optional[List[Action]] = None


class SweepSummary(WireModel):
    """Aggregate result of one sweep tick."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[ActionResult] = Field(default_factory=list)
