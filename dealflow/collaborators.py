"""Outbound collaborators: transactional mail and webhook URL screening."""

from __future__ import annotations

import ipaddress
import logging
from typing import Optional, Protocol, Sequence
from urllib.parse import urlsplit

import httpx

from .config import MailConfig, WebhookSettings
from .constants import DEFAULT_HTTP_TIMEOUT, DEFAULT_MAIL_API_URL, DEFAULT_MAIL_FROM
from .exceptions import ConfigurationError, MailDeliveryError

logger = logging.getLogger(__name__)

_BLOCKED_HOSTNAMES = {
    "localhost",
    "metadata.google.internal",
    "metadata.goog",
    "instance-data",
}


class MailSender(Protocol):
    """Anything that can deliver one HTML email."""

    async def send(self, to: Sequence[str], subject: str, html: str) -> None:
        """Deliver the message or raise :class:`MailDeliveryError`."""


class ResendMailSender:
    """Send mail through a Resend-compatible HTTP API."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_MAIL_API_URL,
        from_address: str = DEFAULT_MAIL_FROM,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.from_address = from_address
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(
        cls, config: MailConfig, client: Optional[httpx.AsyncClient] = None
    ) -> Optional["ResendMailSender"]:
        """Build a sender, or return ``None`` when no API key is configured."""
        if not config.api_key:
            return None
        return cls(
            config.api_key,
            api_url=config.api_url,
            from_address=config.from_address,
            client=client,
            timeout=config.timeout,
        )

    async def send(self, to: Sequence[str], subject: str, html: str) -> None:
        payload = {
            "from": self.from_address,
            "to": list(to),
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(
                self.api_url, json=payload, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            raise MailDeliveryError(f"Email failed: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if not response.is_success:
            logger.error(f"Mail API error {response.status_code}: {response.text}")
            raise MailDeliveryError(
                f"Email failed: {response.reason_phrase or response.status_code}",
                status_code=response.status_code,
            )
        logger.debug(f"Email '{subject}' accepted for {len(payload['to'])} recipient(s)")


def validate_webhook_url(url: str, settings: Optional[WebhookSettings] = None) -> None:
    """Reject webhook targets that point at internal infrastructure.

    Raises :class:`ConfigurationError` with a human readable reason when
    ``url`` is malformed, not HTTPS (unless allowed), or resolves by name or
    literal address to loopback, private, link-local or metadata hosts.
    """
    settings = settings or WebhookSettings()
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise ConfigurationError("Invalid webhook URL: Invalid URL format") from exc

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError("Invalid webhook URL: Invalid URL format")
    if settings.require_https and parts.scheme != "https":
        raise ConfigurationError("Invalid webhook URL: Only HTTPS URLs are allowed")
    if settings.allow_private_hosts:
        return

    hostname = parts.hostname.lower()
    if hostname in _BLOCKED_HOSTNAMES:
        raise ConfigurationError(
            "Invalid webhook URL: Internal and metadata hosts are not allowed"
        )
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return
    if (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    ):
        raise ConfigurationError(
            "Invalid webhook URL: Private/internal URLs are not allowed"
        )
