"""Shared defaults for the dealflow automation engine."""

DEFAULT_SWEEP_BATCH_SIZE = 50
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
DEFAULT_LEASE_SECONDS = 900
DEFAULT_MAX_CHAIN_DEPTH = 5
DEFAULT_HTTP_TIMEOUT = 10.0

TEST_DEAL_ID = "test-deal-id"
NIL_DEAL_ID = "00000000-0000-0000-0000-000000000000"

WEBHOOK_EVENT = "delayed_workflow_action"
NOTIFICATION_ALERT_TYPE = "workflow"

DEFAULT_MAIL_API_URL = "https://api.resend.com/emails"
DEFAULT_MAIL_FROM = "Deal Workflows <notifications@resend.dev>"
