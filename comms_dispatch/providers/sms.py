# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMS delivery through an HTTP gateway and SMS segment accounting."""

from __future__ import annotations

from typing import Any

import aiohttp

from ..errors import ProviderError
from ..models import Communication
from ..retry import RetryStrategy
from .base import ProviderAdapter, SendResult, http_error, parse_cost

GSM_7BIT = "GSM_7BIT"
UCS2 = "UCS2"

# (single message length, length per part when concatenated)
SEGMENT_LIMITS = {
    GSM_7BIT: (160, 153),
    UCS2: (70, 67),
}

GSM_BASIC_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM_EXTENDED_CHARS = set("^{}\\[~]|€\f")

DEFAULT_BASE_URL = "https://api.africastalking.com/version1"
SUCCESS_CODES = {100, 101, 102}
TEMPORARY_CODES = {500, 501, 502}


def detect_encoding(text: str) -> str:
    """Return ``UCS2`` when ``text`` holds any character outside the GSM alphabet."""
    for ch in text:
        if ch not in GSM_BASIC_CHARS and ch not in GSM_EXTENDED_CHARS:
            return UCS2
    return GSM_7BIT


def count_segments(text: str, encoding: str | None = None) -> int:
    """Return the number of SMS parts needed to carry ``text``."""
    encoding = encoding or detect_encoding(text)
    single, concatenated = SEGMENT_LIMITS.get(encoding, SEGMENT_LIMITS[GSM_7BIT])
    length = len(text)
    if length <= single:
        return 1
    return -(-length // concatenated)


class HttpSmsProvider(ProviderAdapter):
    """Africa's Talking shaped SMS gateway.

    Configuration keys: ``base_url``, ``username``, ``api_key``,
    ``sender_id`` (short code or alphanumeric sender), ``timeout``.
    """

    channel = "sms"
    supports_delivery_reports = True

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
    ):
        super().__init__(name, config, rate_limits=rate_limits)
        self.base_url = str(self.config.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.username = self.config.get("username", "sandbox")
        self.api_key = self.config.get("api_key", "")
        self.sender_id = self.config.get("sender_id")

    def _headers(self) -> dict[str, str]:
        return {"apiKey": self.api_key, "Accept": "application/json"}

    async def send(self, message: Communication) -> SendResult:
        text = message.content.body or message.content.text or ""
        form = {
            "username": self.username,
            "to": ",".join(message.to),
            "message": text,
        }
        if self.sender_id:
            form["from"] = self.sender_id
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/messaging", data=form, headers=self._headers()
                ) as resp:
                    if resp.status >= 300:
                        raise http_error(self.name, resp.status, await resp.text())
                    body = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return self._parse_send_response(body, text, message.content.encoding)

    def _parse_send_response(self, body: dict[str, Any], text: str, encoding: str | None) -> SendResult:
        data = (body or {}).get("SMSMessageData") or {}
        recipients = data.get("Recipients") or []
        if isinstance(recipients, dict):
            recipients = [recipients]
        accepted = [r for r in recipients if int(r.get("statusCode", 0)) in SUCCESS_CODES]
        if not accepted:
            codes = [int(r.get("statusCode", 0)) for r in recipients]
            temporary = bool(codes) and all(code in TEMPORARY_CODES for code in codes)
            statuses = ", ".join(str(r.get("status")) for r in recipients) or data.get("Message") or "no recipients"
            raise ProviderError(
                f"SMS rejected by {self.name}: {statuses}",
                code="sms_rejected",
                temporary=temporary,
                provider=self.name,
                provider_code=codes[0] if codes else None,
            )
        costs = [parse_cost(r.get("cost")) for r in accepted]
        known_costs = [c for c in costs if c is not None]
        return SendResult(
            provider_message_id=accepted[0].get("messageId"),
            cost=sum(known_costs) if known_costs else None,
            segments=count_segments(text, encoding),
            metadata={"message": data.get("Message"), "accepted": len(accepted), "total": len(recipients)},
        )

    async def get_balance(self) -> float | None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.base_url}/user", params={"username": self.username}, headers=self._headers()
                ) as resp:
                    if resp.status >= 300:
                        raise http_error(self.name, resp.status, await resp.text())
                    body = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise RetryStrategy().to_provider_error(exc, self.name) from exc
        return parse_cost(((body or {}).get("UserData") or {}).get("balance"))


__all__ = ["GSM_7BIT", "UCS2", "HttpSmsProvider", "count_segments", "detect_encoding"]
