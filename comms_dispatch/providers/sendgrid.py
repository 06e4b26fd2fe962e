# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email delivery through the SendGrid v3 Mail Send API."""

from __future__ import annotations

from typing import Any

import aiohttp

from ..errors import ProviderError
from ..models import Communication
from ..retry import RetryStrategy
from .base import ProviderAdapter, SendResult, http_error

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridEmailProvider(ProviderAdapter):
    """POST one message per communication to ``/v3/mail/send``.

    The communication id travels as the ``communication_id`` custom arg so
    the Event Webhook can be correlated; the ``X-Message-Id`` response header
    is kept as the provider message id.

    Configuration keys: ``api_key``, ``from_address``, ``from_name``,
    ``reply_to``, ``url`` (defaults to the public API), ``sandbox_mode``.
    """

    channel = "email"
    supports_delivery_reports = True

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
    ):
        super().__init__(name, config, rate_limits=rate_limits)
        self.api_key = self.config.get("api_key")
        if not self.api_key:
            raise ValueError(f"SendGrid provider '{name}' requires 'api_key'")
        self.url = self.config.get("url") or SENDGRID_API_URL
        self.from_address = self.config.get("from_address") or self.config.get("from")
        self.from_name = self.config.get("from_name")
        self.reply_to = self.config.get("reply_to")
        self.sandbox_mode = bool(self.config.get("sandbox_mode", False))

    def build_payload(self, message: Communication) -> dict[str, Any]:
        if not self.from_address:
            raise ProviderError(
                f"Provider {self.name} has no from_address configured",
                code="missing_sender",
                temporary=False,
                provider=self.name,
            )
        content = message.content
        sender: dict[str, Any] = {"email": self.from_address}
        if self.from_name:
            sender["name"] = self.from_name
        parts = [{"type": "text/plain", "value": content.text or content.body or ""}]
        if content.html:
            parts.append({"type": "text/html", "value": content.html})
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": address} for address in message.to]}],
            "from": sender,
            "subject": content.subject or "",
            "content": parts,
            "custom_args": {"communication_id": message.id},
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }
        if self.reply_to:
            payload["reply_to"] = {"email": self.reply_to}
        if message.bulk_id:
            payload["custom_args"]["bulk_id"] = message.bulk_id
        if self.sandbox_mode:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}
        return payload

    async def send(self, message: Communication) -> SendResult:
        payload = self.build_payload(message)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self.url, json=payload, headers=headers) as resp:
                    if resp.status >= 300:
                        raise http_error(self.name, resp.status, await resp.text())
                    message_id = resp.headers.get("X-Message-Id")
        except aiohttp.ClientError as exc:
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return SendResult(provider_message_id=message_id)


__all__ = ["SendGridEmailProvider"]
