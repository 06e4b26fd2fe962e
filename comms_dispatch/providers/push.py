# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Push notifications through an HTTP push gateway."""

from __future__ import annotations

from typing import Any

import aiohttp

from ..errors import ProviderError
from ..models import Communication
from ..retry import RetryStrategy
from .base import ProviderAdapter, SendResult, http_error


class HttpPushProvider(ProviderAdapter):
    """POST one JSON notification per device token.

    Configuration keys: ``url`` (gateway endpoint), ``server_key`` (sent as
    ``Authorization: key=...``) or ``bearer_token``.
    """

    channel = "push"

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
    ):
        super().__init__(name, config, rate_limits=rate_limits)
        self.url = self.config.get("url")
        if not self.url:
            raise ValueError(f"Push provider '{name}' requires 'url'")
        self.server_key = self.config.get("server_key")
        self.bearer_token = self.config.get("bearer_token")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        elif self.server_key:
            headers["Authorization"] = f"key={self.server_key}"
        return headers

    @staticmethod
    def build_payload(token: str, message: Communication) -> dict[str, Any]:
        content = message.content
        return {
            "to": token,
            "notification": {
                "title": content.title or content.subject or "",
                "body": content.body or content.text or "",
            },
            "data": {**(content.data or {}), "communication_id": message.id},
        }

    async def send(self, message: Communication) -> SendResult:
        message_ids: list[str] = []
        try:
            async with aiohttp.ClientSession() as session:
                for token in message.to:
                    async with session.post(
                        self.url, json=self.build_payload(token, message), headers=self._headers()
                    ) as resp:
                        if resp.status >= 300:
                            raise http_error(self.name, resp.status, await resp.text())
                        body = await resp.json(content_type=None) or {}
                    message_id = body.get("message_id") or body.get("name") or body.get("id")
                    if body.get("failure"):
                        raise ProviderError(
                            f"Push rejected by {self.name}: {body.get('results') or body}",
                            code="push_rejected",
                            temporary=False,
                            provider=self.name,
                        )
                    if message_id:
                        message_ids.append(str(message_id))
        except aiohttp.ClientError as exc:
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return SendResult(
            provider_message_id=message_ids[0] if message_ids else None,
            metadata={"message_ids": message_ids} if len(message_ids) > 1 else {},
        )


__all__ = ["HttpPushProvider"]
