# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate limiter that relies on persisted send logs."""

from __future__ import annotations

import time
from typing import Any

from .persistence import Persistence

WINDOWS = (
    ("per_minute", 60),
    ("per_hour", 3600),
    ("per_day", 86400),
)


class RateLimiter:
    """Fixed-window limiter per provider built on top of :class:`Persistence`.

    Windows are aligned on the epoch (minute, hour, day), so a deferred job
    becomes sendable exactly at the boundary it was deferred to.
    """

    def __init__(self, persistence: Persistence):
        """Store the persistence helper used to read and write counters."""
        self.persistence = persistence

    async def check_and_plan(
        self, provider: str, limits: dict[str, Any] | None, now_ts: int | None = None
    ) -> int | None:
        """Return a timestamp until which sends through ``provider`` must wait.

        ``limits`` may hold ``per_minute``, ``per_hour`` and ``per_day``;
        missing or non-positive values disable that window.
        """
        if not limits:
            return None
        now = int(time.time()) if now_ts is None else int(now_ts)

        for key, window in WINDOWS:
            value = limits.get(key)
            if value is None or int(value) <= 0:
                continue
            window_start = now - now % window
            count = await self.persistence.count_sends_since(provider, window_start)
            if count >= int(value):
                return window_start + window
        return None

    async def log_send(self, provider: str, now_ts: int | None = None) -> None:
        """Persist the fact that a message has been handed to ``provider``."""
        await self.persistence.log_send(provider, int(time.time()) if now_ts is None else int(now_ts))


__all__ = ["RateLimiter"]
