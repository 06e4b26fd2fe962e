# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound webhooks: the communication is POSTed as JSON to each target URL."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import aiohttp

from ..models import Communication
from ..retry import RetryStrategy
from .base import ProviderAdapter, SendResult, http_error

SIGNATURE_HEADER = "X-Comms-Signature"
TIMESTAMP_HEADER = "X-Comms-Timestamp"


def sign_payload(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 of ``"<timestamp>.<body>"`` hex encoded."""
    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256)
    return f"sha256={mac.hexdigest()}"


class WebhookProvider(ProviderAdapter):
    """Deliver a communication to HTTP endpoints; any 2xx answer means sent.

    Configuration keys: ``secret`` (enables the signature header),
    ``headers`` (extra static headers).
    """

    channel = "webhook"

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
    ):
        super().__init__(name, config, rate_limits=rate_limits)
        self.secret = self.config.get("secret")
        self.extra_headers = dict(self.config.get("headers") or {})

    @staticmethod
    def build_payload(message: Communication) -> dict[str, Any]:
        return {
            "id": message.id,
            "type": "webhook",
            "attempt": message.attempt,
            "content": message.content.model_dump(exclude_none=True),
            "context": message.context.model_dump(exclude_none=True),
            "metadata": message.metadata,
        }

    def _headers(self, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.secret:
            timestamp = int(time.time())
            headers[TIMESTAMP_HEADER] = str(timestamp)
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, timestamp, body)
        return headers

    async def send(self, message: Communication) -> SendResult:
        body = json.dumps(self.build_payload(message)).encode("utf-8")
        request_ids: list[str] = []
        try:
            async with aiohttp.ClientSession() as session:
                for url in message.to:
                    async with session.post(url, data=body, headers=self._headers(body)) as resp:
                        if resp.status >= 300:
                            raise http_error(self.name, resp.status, await resp.text())
                        request_id = resp.headers.get("X-Request-Id")
                        if request_id:
                            request_ids.append(request_id)
        except aiohttp.ClientError as exc:
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return SendResult(
            provider_message_id=request_ids[0] if request_ids else f"{message.id}:{message.attempt}",
        )


__all__ = ["WebhookProvider", "sign_payload"]
