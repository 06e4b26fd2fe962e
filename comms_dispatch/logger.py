# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the communications dispatcher.

Logging configuration should be done via ``logging.basicConfig()`` in the
main entry point (main.py) to avoid duplicate handlers; modules only ask for
named loggers below the ``CommsDispatch`` root.
"""

from __future__ import annotations

import logging

ROOT_LOGGER = "CommsDispatch"


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Return the named :class:`logging.Logger` instance."""
    return logging.getLogger(name)


class DeliveryActivityLog:
    """Per-attempt delivery trail, written at info level only when enabled.

    Operators switch it on with ``[logging] delivery_activity`` to follow
    individual messages without raising the level of the whole service.
    """

    def __init__(self, enabled: bool = False, logger: logging.Logger | None = None):
        self.enabled = bool(enabled)
        self.logger = logger or get_logger(f"{ROOT_LOGGER}.activity")

    def attempt(self, channel: str, communication_id: str, recipients: list[str], provider: str, attempt: int):
        if self.enabled:
            self.logger.info(
                "Attempting %s delivery of %s to %s via %s (attempt %d)",
                channel,
                communication_id,
                ", ".join(recipients),
                provider,
                attempt,
            )

    def deferred(self, communication_id: str, provider: str, until_ts: int):
        if self.enabled:
            self.logger.info("Delivery of %s deferred until %s by %s rate limit", communication_id, until_ts, provider)

    def sent(self, communication_id: str, provider: str, provider_message_id: str | None):
        if self.enabled:
            self.logger.info(
                "Delivery succeeded for %s via %s (provider id %s)", communication_id, provider, provider_message_id
            )

    def failed(self, communication_id: str, provider: str | None, error: Exception, retry_at: int | None = None):
        if not self.enabled:
            return
        if retry_at is None:
            self.logger.info("Delivery failed for %s via %s: %s", communication_id, provider, error)
        else:
            self.logger.info(
                "Delivery failed for %s via %s: %s (next attempt at %s)", communication_id, provider, error, retry_at
            )


__all__ = ["DeliveryActivityLog", "ROOT_LOGGER", "get_logger"]
