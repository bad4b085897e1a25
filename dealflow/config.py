from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAIL_API_URL,
    DEFAULT_MAIL_FROM,
    DEFAULT_MAX_CHAIN_DEPTH,
    DEFAULT_SWEEP_BATCH_SIZE,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    TEST_DEAL_ID,
)


class MailConfig(BaseModel):
    """Configuration for the transactional mail API."""

    api_key: Optional[str] = None
    api_url: str = DEFAULT_MAIL_API_URL
    from_address: str = DEFAULT_MAIL_FROM
    timeout: float = DEFAULT_HTTP_TIMEOUT


class WebhookSettings(BaseModel):
    """Outbound webhook call settings."""

    timeout: float = DEFAULT_HTTP_TIMEOUT
    require_https: bool = True
    allow_private_hosts: bool = False


class SweeperConfig(BaseModel):
    """Scheduled action sweeper settings."""

    batch_size: int = Field(default=DEFAULT_SWEEP_BATCH_SIZE, gt=0)
    lease_seconds: int = Field(default=DEFAULT_LEASE_SECONDS, gt=0)
    interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    summary_recipients: List[str] = Field(default_factory=list)


class EngineConfig(BaseModel):
    """Execution path settings."""

    max_chain_depth: int = Field(default=DEFAULT_MAX_CHAIN_DEPTH, ge=0)
    test_deal_ids: List[str] = Field(default_factory=lambda: [TEST_DEAL_ID])


class DealflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    mail: MailConfig = Field(default_factory=MailConfig)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)


def load_config(path: Optional[str] = None) -> DealflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DEALFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DEALFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DealflowConfig(**data)
    else:
        config = DealflowConfig()

    env_db_url = os.getenv("DEALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_mail_key = os.getenv("RESEND_API_KEY")
    if env_mail_key:
        config.mail.api_key = env_mail_key
    return config
