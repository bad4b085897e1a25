"""Exception hierarchy for the automation engine.

Each error carries an ``error_kind`` so the dispatcher can tag the failed
:class:`~dealflow.contracts.ActionResult` it converts the error into.
"""

from __future__ import annotations


class DealflowError(Exception):
    """Base class for all engine errors."""

    error_kind = "collaborator"


class ConfigurationError(DealflowError):
    """An action or workflow is missing required configuration."""

    error_kind = "configuration"


class WorkflowNotFoundError(DealflowError):
    """The requested workflow is not in the catalog."""

    error_kind = "configuration"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class InactiveWorkflowError(DealflowError):
    """The requested workflow exists but is switched off."""

    error_kind = "configuration"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} is inactive")


class ChainDepthExceededError(DealflowError):
    """A chained workflow would exceed the configured chain depth."""

    error_kind = "chain_depth"

    def __init__(self, depth: int, limit: int):
        self.depth = depth
        self.limit = limit
        super().__init__(f"Chain depth {depth} exceeds limit of {limit}")


class MailDeliveryError(DealflowError):
    """The mail API rejected or failed to accept a message."""

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DealNotFoundError(DealflowError):
    """A field update targeted a deal that does not exist."""

    def __init__(self, deal_id: str):
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} not found")


class StoreError(DealflowError):
    """Reading or writing persisted engine state failed."""

    error_kind = "store"
