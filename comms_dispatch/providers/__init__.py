# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider adapters and the registry used to pick one per channel."""

from __future__ import annotations

from typing import Any

from ..errors import ProviderNotFound
from ..logger import get_logger
from ..models import enum_value
from .base import ProviderAdapter, SendResult, parse_cost
from .push import HttpPushProvider
from .sendgrid import SendGridEmailProvider
from .sms import HttpSmsProvider, count_segments, detect_encoding
from .smtp import SmtpEmailProvider
from .webhook import WebhookProvider

PROVIDER_TYPES: dict[str, type[ProviderAdapter]] = {
    "smtp": SmtpEmailProvider,
    "sendgrid": SendGridEmailProvider,
    "africastalking": HttpSmsProvider,
    "http_sms": HttpSmsProvider,
    "http_push": HttpPushProvider,
    "webhook": WebhookProvider,
}

logger = get_logger("CommsDispatch.providers")


def build_provider(definition: dict[str, Any]) -> ProviderAdapter:
    """Instantiate an adapter from a ``{name, type, config}`` definition."""
    provider_type = str(definition.get("type", "")).lower()
    try:
        cls = PROVIDER_TYPES[provider_type]
    except KeyError:
        raise ValueError(f"Unknown provider type '{provider_type}' for '{definition.get('name')}'") from None
    return cls(definition["name"], definition.get("config") or {})


class ProviderRegistry:
    """Named adapters plus one default adapter per channel."""

    def __init__(self):
        self._providers: dict[str, ProviderAdapter] = {}
        self._defaults: dict[str, str] = {}

    def register(self, adapter: ProviderAdapter, *, default: bool = False) -> None:
        self._providers[adapter.name] = adapter
        if default or adapter.channel not in self._defaults:
            self._defaults[adapter.channel] = adapter.name
        logger.debug("Registered %s provider %s (default=%s)", adapter.channel, adapter.name, default)

    def get(self, name: str) -> ProviderAdapter:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFound(f"Provider '{name}' is not registered") from None

    def default(self, channel: str) -> ProviderAdapter:
        name = self._defaults.get(enum_value(channel))
        if name is None:
            raise ProviderNotFound(f"No provider configured for channel '{channel}'")
        return self._providers[name]

    def select(self, channel: str, name: str | None = None) -> ProviderAdapter:
        """Return the adapter for ``channel``, honouring an explicit ``name``."""
        if not name:
            return self.default(channel)
        adapter = self.get(name)
        if adapter.channel != enum_value(channel):
            raise ProviderNotFound(f"Provider '{name}' does not serve channel '{channel}'")
        return adapter

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __iter__(self):
        return iter(self._providers.values())

    def describe(self) -> list[dict[str, Any]]:
        items = []
        for adapter in self._providers.values():
            info = adapter.describe()
            info["default"] = self._defaults.get(adapter.channel) == adapter.name
            items.append(info)
        return items

    async def close(self) -> None:
        for adapter in self._providers.values():
            await adapter.close()


__all__ = [
    "HttpPushProvider",
    "HttpSmsProvider",
    "PROVIDER_TYPES",
    "ProviderAdapter",
    "ProviderRegistry",
    "SendGridEmailProvider",
    "SendResult",
    "SmtpEmailProvider",
    "WebhookProvider",
    "build_provider",
    "count_segments",
    "detect_encoding",
    "parse_cost",
]
