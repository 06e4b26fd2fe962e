# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable dispatch queue backed by the ``jobs`` table.

Enqueueing is a single insert: no provider I/O happens on the caller's
path. Jobs are claimed with a conditional update so two workers never own
the same job; a claim older than the visibility timeout is considered
abandoned and the job becomes claimable again, which gives at-least-once
redelivery after a worker crash.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any

from .logger import get_logger
from .models import DEFAULT_PRIORITY, PRIORITY_RANKS, enum_value
from .persistence import Persistence

DEFAULT_VISIBILITY_TIMEOUT = 300
CLAIM_SCAN_LIMIT = 20

_CHANNEL_NAMES = {
    "email": "Email",
    "sms": "Sms",
    "push": "Push",
    "webhook": "Webhook",
}


def job_name_for(comm_type: str, *, bulk: bool = False, templated: bool = False) -> str:
    """Return the job name for a channel, e.g. ``sendBulkEmailWithTemplate``."""
    try:
        channel = _CHANNEL_NAMES[enum_value(comm_type)]
    except KeyError:
        raise ValueError(f"Unknown communication type '{comm_type}'") from None
    name = f"send{'Bulk' if bulk else ''}{channel}"
    if templated:
        name += "WithTemplate"
    return name


def job_id_for(communication_id: str, attempt: int) -> str:
    """Return the idempotency key of the job for one attempt."""
    return f"{communication_id}:{int(attempt)}"


def priority_rank(value: Any) -> int:
    """Map a priority label (or rank) to its queue rank; unknown values are ``normal``."""
    if isinstance(value, str):
        key = value.lower()
        if key in PRIORITY_RANKS:
            return PRIORITY_RANKS[key]
        try:
            value = int(value)
        except ValueError:
            return PRIORITY_RANKS[DEFAULT_PRIORITY]
    if isinstance(value, (int, float)):
        return max(0, min(int(value), max(PRIORITY_RANKS.values())))
    return PRIORITY_RANKS[DEFAULT_PRIORITY]


@dataclass
class JobHandle:
    """A queued unit of work."""

    id: str
    job_name: str
    communication_id: str
    attempt: int
    priority: int
    available_ts: int
    payload: dict[str, Any] = field(default_factory=dict)
    created: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any], *, created: bool = False) -> "JobHandle":
        return cls(
            id=row["id"],
            job_name=row["job_name"],
            communication_id=row["communication_id"],
            attempt=int(row.get("attempt") or 0),
            priority=int(row.get("priority") or 0),
            available_ts=int(row.get("available_ts") or 0),
            payload=row.get("payload") or {},
            created=created,
        )


class DispatchQueue:
    """Persisted job queue with claim/complete/release semantics."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        logger=None,
    ):
        self.persistence = persistence
        self.visibility_timeout = max(1, int(visibility_timeout))
        self.logger = logger or get_logger("CommsDispatch.queue")
        self._wake_event = asyncio.Event()

    @staticmethod
    def _now() -> int:
        return int(time.time())

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        priority: Any = DEFAULT_PRIORITY,
        available_ts: int | None = None,
    ) -> JobHandle:
        """Persist a job; enqueuing an existing job identity returns the stored job."""
        communication_id = payload.get("communicationId")
        if not communication_id:
            raise ValueError("Job payload requires 'communicationId'")
        attempt = int(payload.get("attempt") or 0)
        job_payload = dict(payload)
        job_payload["jobName"] = job_name
        job_payload["attempt"] = attempt
        handle = JobHandle(
            id=job_id_for(communication_id, attempt),
            job_name=job_name,
            communication_id=communication_id,
            attempt=attempt,
            priority=priority_rank(priority),
            available_ts=int(available_ts if available_ts is not None else self._now()),
            payload=job_payload,
        )
        inserted = await self.persistence.insert_job(
            {
                "id": handle.id,
                "job_name": handle.job_name,
                "communication_id": handle.communication_id,
                "priority": handle.priority,
                "attempt": handle.attempt,
                "payload": handle.payload,
                "available_ts": handle.available_ts,
            }
        )
        if not inserted:
            self.logger.debug("Job %s already queued", handle.id)
            existing = await self.persistence.get_job(handle.id)
            if existing:
                return JobHandle.from_row(existing, created=False)
            handle.created = False
            return handle
        self.notify()
        return handle

    async def claim(self, worker_id: str, now_ts: int | None = None) -> JobHandle | None:
        """Take ownership of the next available job, or return ``None``."""
        now_ts = self._now() if now_ts is None else int(now_ts)
        stale_before = now_ts - self.visibility_timeout
        candidates = await self.persistence.fetch_claimable_jobs(
            now_ts=now_ts, stale_before=stale_before, limit=CLAIM_SCAN_LIMIT
        )
        for row in candidates:
            if row.get("claimed_by"):
                self.logger.warning(
                    "Reclaiming job %s abandoned by %s", row["id"], row.get("claimed_by")
                )
            if await self.persistence.claim_job(row["id"], worker_id, now_ts=now_ts, stale_before=stale_before):
                return JobHandle.from_row(row)
        return None

    async def complete(self, job_id: str, outcome: str, now_ts: int | None = None) -> None:
        await self.persistence.complete_job(job_id, outcome, self._now() if now_ts is None else int(now_ts))

    async def release(self, job_id: str, available_ts: int) -> None:
        """Hand a claimed job back, due again at ``available_ts``."""
        await self.persistence.release_job(job_id, int(available_ts))

    async def cancel_for_communication(self, communication_id: str) -> int:
        return await self.persistence.cancel_jobs_for(communication_id, self._now())

    async def count_ready(self) -> int:
        """Return the number of jobs not yet completed."""
        return await self.persistence.count_open_jobs()

    async def purge_completed_before(self, threshold_ts: int) -> int:
        return await self.persistence.remove_completed_jobs_before(int(threshold_ts))

    # ------------------------------------------------------------------ wakeup
    def notify(self) -> None:
        """Wake up idle workers."""
        self._wake_event.set()

    async def wait_for_work(self, timeout: float | None) -> None:
        """Block until :meth:`notify` is called or ``timeout`` elapses."""
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()


__all__ = ["DispatchQueue", "JobHandle", "job_id_for", "job_name_for", "priority_rank"]
