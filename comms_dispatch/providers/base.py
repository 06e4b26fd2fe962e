# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider adapter interface."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ..errors import ProviderError
from ..models import Communication, DeliveryStatus

COST_RE = re.compile(r"(-?\d+(?:\.\d+)?)")


@dataclass
class SendResult:
    """Outcome of a successful hand-off to a provider."""

    provider_message_id: str | None
    status: str = "sent"
    cost: float | None = None
    segments: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def parse_cost(value: Any) -> float | None:
    """Parse provider cost strings such as ``"KES 0.8000"``."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = COST_RE.search(str(value))
    return float(match.group(1)) if match else None


def http_error(provider: str, status: int, body: str = "") -> ProviderError:
    """Build the error for a non-2xx provider response.

    Throttling (429) and server side errors are worth a retry, any other
    client error is not.
    """
    temporary = status == 429 or status >= 500
    detail = body.strip()[:200] if body else ""
    message = f"{provider} responded with HTTP {status}" + (f": {detail}" if detail else "")
    return ProviderError(
        message,
        code="http_error",
        temporary=temporary,
        provider=provider,
        provider_code=status,
    )


class ProviderAdapter:
    """Interface implemented by concrete delivery providers.

    Attributes:
        name: Registry key, also stored on the communications it sends.
        channel: The :class:`~comms_dispatch.models.CommType` value served.
        supports_delivery_reports: Whether the provider reports delivery
            outcomes later through webhooks.
        rate_limits: Optional ``per_minute``/``per_hour``/``per_day`` caps.
    """

    channel: str = ""
    supports_delivery_reports: bool = False

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        rate_limits: dict[str, Any] | None = None,
    ):
        self.name = name
        self.config = dict(config or {})
        limits = rate_limits if rate_limits is not None else self.config.pop("rate_limits", None)
        self.rate_limits: dict[str, Any] = dict(limits or {})
        if "supports_delivery_reports" in self.config:
            self.supports_delivery_reports = bool(self.config.pop("supports_delivery_reports"))

    async def send(self, message: Communication) -> SendResult:
        """Hand ``message`` to the provider; raise :class:`ProviderError` on failure."""
        raise NotImplementedError

    async def get_status(self, provider_message_id: str) -> DeliveryStatus:
        """Poll the provider for a delivery status when it offers one."""
        return DeliveryStatus(status="unknown")

    async def get_balance(self) -> float | None:
        return None

    async def close(self) -> None:
        """Release pooled resources."""

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "channel": self.channel,
            "supports_delivery_reports": self.supports_delivery_reports,
            "rate_limits": self.rate_limits,
        }


__all__ = ["ProviderAdapter", "SendResult", "http_error", "parse_cost"]
