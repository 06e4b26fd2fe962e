# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery worker pool.

A fixed number of asyncio tasks claim jobs from the :class:`DispatchQueue`
and drive each communication along the send path::

    pending -> queued -> sending -> sent | failed [-> queued on retry]

Every status write is a conditional update, so a cancel arriving while a
job is being processed wins: the worker notices the refused transition and
stops, recording only provider correlation data when the provider had
already accepted the message.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from . import lifecycle
from .dispatch_queue import DispatchQueue, JobHandle
from .errors import CommsError, ProviderError, ProviderNotFound, TemplateNotFound
from .logger import DeliveryActivityLog, get_logger
from .models import Communication
from .persistence import Persistence
from .prometheus import CommsMetrics
from .providers import ProviderAdapter, ProviderRegistry
from .rate_limit import RateLimiter
from .retry import RetryStrategy
from .templates import TemplateResolver

DEFAULT_CONCURRENCY = 5
DEFAULT_EXPIRE_AFTER = 24 * 3600

StatusCallback = Callable[[dict[str, Any]], Awaitable[None]]


class WorkerPool:
    """Bounded set of delivery workers sharing one dispatch queue."""

    def __init__(
        self,
        *,
        persistence: Persistence,
        queue: DispatchQueue,
        providers: ProviderRegistry,
        rate_limiter: RateLimiter,
        templates: TemplateResolver,
        retry: RetryStrategy,
        metrics: CommsMetrics,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = 1.0,
        expire_after: int = DEFAULT_EXPIRE_AFTER,
        on_status_change: StatusCallback | None = None,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.providers = providers
        self.rate_limiter = rate_limiter
        self.templates = templates
        self.retry = retry
        self.metrics = metrics
        self.concurrency = max(1, int(concurrency))
        self.poll_interval = poll_interval
        self.expire_after = int(expire_after)
        self.on_status_change = on_status_change
        self.logger = logger or get_logger("CommsDispatch.worker")
        self.activity = DeliveryActivityLog(log_delivery_activity)
        self.paused = False
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @staticmethod
    def _now() -> int:
        return int(time.time())

    # ----------------------------------------------------------------- lifecycle
    def start(self) -> None:
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"worker-{idx}"), name=f"comms-worker-{idx}")
            for idx in range(self.concurrency)
        ]

    async def stop(self) -> None:
        self._stop.set()
        self.queue.notify()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker_loop(self, worker_id: str) -> None:
        self.logger.debug("Delivery worker %s started", worker_id)
        while not self._stop.is_set():
            if self.paused:
                await self.queue.wait_for_work(self.poll_interval)
                continue
            try:
                job = await self.queue.claim(worker_id)
                if job is None:
                    await self.queue.wait_for_work(self.poll_interval)
                    continue
                await self.process_job(job)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in delivery worker %s: %s", worker_id, exc)
                await self.queue.wait_for_work(self._error_backoff())
        self.logger.debug("Delivery worker %s stopped", worker_id)

    def _error_backoff(self) -> float:
        if self.poll_interval is None or math.isinf(self.poll_interval):
            return 1.0
        return max(0.1, float(self.poll_interval))

    async def run_once(self, now_ts: int | None = None, worker_id: str = "run-once") -> int:
        """Process every job that is ready at ``now_ts``; return how many were handled."""
        processed = 0
        while True:
            ts = self._now() if now_ts is None else int(now_ts)
            job = await self.queue.claim(worker_id, ts)
            if job is None:
                return processed
            await self.process_job(job, ts)
            processed += 1

    # -------------------------------------------------------------------- jobs
    async def process_job(self, job: JobHandle, now_ts: int | None = None) -> str:
        """Run one job to completion and return its outcome."""
        now_ts = self._now() if now_ts is None else int(now_ts)
        outcome = await self._process(job, now_ts)
        if outcome != "deferred":
            await self.queue.complete(job.id, outcome, now_ts)
        self.logger.debug("Job %s finished with outcome %s", job.id, outcome)
        return outcome

    async def _process(self, job: JobHandle, now_ts: int) -> str:
        record = await self.persistence.get_communication(job.communication_id)
        if record is None:
            self.logger.warning("Job %s references unknown communication %s", job.id, job.communication_id)
            return "missing"
        if job.attempt < int(record.get("attempt") or 0):
            return "superseded"

        status = record["status"]
        if status == lifecycle.CANCELLED:
            return "cancelled"

        if status == lifecycle.PENDING:
            scheduled_ts = record.get("scheduled_ts")
            if scheduled_ts is not None and now_ts > int(scheduled_ts) + self.expire_after:
                if await self.persistence.transition(job.communication_id, [lifecycle.PENDING], lifecycle.EXPIRED):
                    self.logger.info("Communication %s expired before dispatch", job.communication_id)
                    await self._notify_status(job.communication_id)
                    return "expired"
                return "skipped"
            if scheduled_ts is not None and int(scheduled_ts) > now_ts:
                await self.queue.release(job.id, int(scheduled_ts))
                return "deferred"
            if not await self.persistence.transition(job.communication_id, [lifecycle.PENDING], lifecycle.QUEUED):
                return "skipped"
            status = lifecycle.QUEUED
        elif status not in (lifecycle.QUEUED, lifecycle.SENDING):
            # Redelivered job for a communication that already left the send path.
            return "skipped"

        message = Communication.from_record(record)

        try:
            provider = self.providers.select(message.type, message.settings.provider or message.provider)
        except ProviderNotFound as exc:
            return await self._fail_before_send(message, status, exc, now_ts)

        if message.template is not None:
            try:
                message.content = self.templates.resolve(
                    message.template.model_dump(), message.content
                )
            except TemplateNotFound as exc:
                return await self._fail_before_send(message, status, exc, now_ts, provider=provider.name)

        deferred_until = await self.rate_limiter.check_and_plan(provider.name, provider.rate_limits, now_ts)
        if deferred_until:
            await self.queue.release(job.id, deferred_until)
            self.metrics.inc_deferred(message.type, provider.name)
            self.activity.deferred(message.id, provider.name, deferred_until)
            return "deferred"

        if status == lifecycle.QUEUED:
            if not await self.persistence.transition(
                message.id, [lifecycle.QUEUED], lifecycle.SENDING, {"provider": provider.name}
            ):
                return "skipped"

        return await self._send(job, message, provider, now_ts)

    async def _send(self, job: JobHandle, message: Communication, provider: ProviderAdapter, now_ts: int) -> str:
        self.activity.attempt(message.type, message.id, message.to, provider.name, message.attempt)
        try:
            async with asyncio.timeout(message.settings.timeout):
                result = await provider.send(message)
        except Exception as exc:
            error = self.retry.to_provider_error(exc, provider.name)
            return await self._handle_failure(job, message, provider, error, now_ts)

        sent_ts = now_ts
        fields: dict[str, Any] = {
            "provider": provider.name,
            "provider_message_id": result.provider_message_id,
            "sent_ts": sent_ts,
            "cost": result.cost,
            "error": None,
            "delivery_status": {
                "status": result.status,
                "last_updated": sent_ts,
                "cost": result.cost,
            },
        }
        if result.segments is not None:
            fields["content"] = {**message.content.model_dump(), "segments": result.segments}
        elif message.template is not None:
            fields["content"] = message.content.model_dump()

        await self.rate_limiter.log_send(provider.name, now_ts)
        self.metrics.inc_sent(message.type, provider.name)

        if not await self.persistence.transition(message.id, [lifecycle.SENDING], lifecycle.SENT, fields):
            # Cancelled while the provider call was in flight; keep the status.
            await self.persistence.update_communication_fields(
                message.id,
                {
                    "provider": provider.name,
                    "provider_message_id": result.provider_message_id,
                    "cost": result.cost,
                },
            )
            self.logger.info("Communication %s was cancelled during dispatch; provider accepted it anyway", message.id)
            return "cancelled"

        self.activity.sent(message.id, provider.name, result.provider_message_id)
        await self._notify_status(message.id)
        return "sent"

    async def _handle_failure(
        self,
        job: JobHandle,
        message: Communication,
        provider: ProviderAdapter,
        error: ProviderError,
        now_ts: int,
    ) -> str:
        attempt = message.attempt
        max_retries = message.settings.max_retries
        error_info = {
            "code": error.code,
            "message": str(error),
            "provider": provider.name,
            "retry_count": attempt,
        }
        delivery_status = {
            "status": "failed",
            "provider_status": str(error.provider_code) if error.provider_code is not None else None,
            "provider_error": str(error),
            "last_updated": now_ts,
        }
        if not await self.persistence.transition(
            message.id,
            [lifecycle.SENDING],
            lifecycle.FAILED,
            {"error": error_info, "provider": provider.name, "delivery_status": delivery_status},
        ):
            return "cancelled"
        self.metrics.inc_failed(message.type, provider.name)

        if error.temporary and attempt < max_retries:
            next_attempt = attempt + 1
            available_ts = self.retry.next_attempt_ts(now_ts, message.settings.retry_interval)
            requeued = await self.persistence.transition(
                message.id,
                [lifecycle.FAILED],
                lifecycle.QUEUED,
                {
                    "error": None,
                    "attempt": next_attempt,
                    "retry_count": next_attempt,
                    "delivery_status": delivery_status,
                },
            )
            if requeued:
                payload = dict(job.payload)
                payload["attempt"] = next_attempt
                await self.queue.enqueue(
                    job.job_name, payload, priority=job.priority, available_ts=available_ts
                )
                self.metrics.inc_retried(message.type, provider.name)
                self.activity.failed(message.id, provider.name, error, available_ts)
                self.logger.warning(
                    "Temporary error for %s (attempt %d/%d): %s - retrying at %s",
                    message.id,
                    next_attempt,
                    max_retries,
                    error,
                    available_ts,
                )
                return "retry"

        self.activity.failed(message.id, provider.name, error)
        if error.temporary:
            self.logger.error("Communication %s failed after %d retries: %s", message.id, attempt, error)
        else:
            self.logger.error("Communication %s failed with permanent error: %s", message.id, error)
        await self._notify_status(message.id)
        return "failed"

    async def _fail_before_send(
        self,
        message: Communication,
        status: str,
        exc: CommsError,
        now_ts: int,
        *,
        provider: str | None = None,
    ) -> str:
        """Terminal failure detected before calling the provider (no retry)."""
        if status == lifecycle.QUEUED:
            if not await self.persistence.transition(message.id, [lifecycle.QUEUED], lifecycle.SENDING):
                return "skipped"
        error_info = {"code": exc.code, "message": str(exc), "provider": provider, "retry_count": message.attempt}
        if await self.persistence.transition(
            message.id,
            [lifecycle.SENDING],
            lifecycle.FAILED,
            {"error": error_info, "delivery_status": {"status": "failed", "provider_error": str(exc), "last_updated": now_ts}},
        ):
            self.metrics.inc_failed(message.type, provider)
            self.logger.error("Communication %s cannot be sent: %s", message.id, exc)
            await self._notify_status(message.id)
            return "failed"
        return "skipped"

    async def _notify_status(self, communication_id: str) -> None:
        if self.on_status_change is None:
            return
        record = await self.persistence.get_communication(communication_id)
        if record is not None:
            await self.on_status_change(record)


__all__ = ["DEFAULT_CONCURRENCY", "DEFAULT_EXPIRE_AFTER", "WorkerPool"]
