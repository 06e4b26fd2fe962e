# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the communications dispatcher."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any

import aiohttp

from . import lifecycle
from .bulk import BulkOrchestrator
from .dispatch_queue import DispatchQueue
from .errors import (
    CommsError,
    CommunicationNotFound,
    ProviderError,
    StaleTransition,
    UnknownCorrelation,
)
from .logger import get_logger
from .models import (
    BulkCommunication,
    BulkSendRequest,
    CommSettings,
    Communication,
    DeliveryStatus,
    ListQuery,
    SendRequest,
    enum_value,
)
from .persistence import Persistence
from .prometheus import CommsMetrics
from .providers import ProviderRegistry
from .rate_limit import RateLimiter
from .recipients import DEFAULT_COUNTRY_CODE, RecipientNormalizer
from .retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_INTERVAL, DEFAULT_RETRY_UNIT_SECONDS, RetryStrategy
from .submission import SubmissionBuilder
from .templates import TemplateResolver, TemplateStore
from .webhooks import WebhookReconciler
from .worker import DEFAULT_CONCURRENCY, DEFAULT_EXPIRE_AFTER, WorkerPool

SEND_LOG_RETENTION = 24 * 3600


class CommsDispatchCore:
    """Accept send requests, drive delivery workers and reconcile webhooks."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/comms_dispatch.db",
        logger=None,
        metrics: CommsMetrics | None = None,
        providers: ProviderRegistry | None = None,
        templates: TemplateStore | dict[str, dict[str, Any]] | None = None,
        start_active: bool = True,
        test_mode: bool = False,
        worker_concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = 1.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        retry_unit_seconds: int = DEFAULT_RETRY_UNIT_SECONDS,
        timeout: float = 30,
        expire_after: int = DEFAULT_EXPIRE_AFTER,
        visibility_timeout: int = 300,
        job_retention_seconds: int = 7 * 24 * 3600,
        maintenance_interval: float = 60,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.metrics = metrics or CommsMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.providers = providers or ProviderRegistry()
        if not isinstance(templates, TemplateStore):
            templates = TemplateStore(templates)
        self.templates = TemplateResolver(templates)
        self.queue = DispatchQueue(self.persistence, visibility_timeout=visibility_timeout)
        self.rate_limiter = RateLimiter(self.persistence)
        self.retry = RetryStrategy(max_retries=max_retries, retry_unit_seconds=retry_unit_seconds)
        self.normalizer = RecipientNormalizer(default_country_code)
        self.builder = SubmissionBuilder(
            self.persistence,
            self.queue,
            self.providers,
            default_settings=CommSettings(
                max_retries=max_retries, retry_interval=retry_interval, timeout=timeout
            ),
        )
        self.bulk = BulkOrchestrator(self.persistence, self.builder, self.normalizer)
        self._test_mode = bool(test_mode)
        self._expire_after = int(expire_after)
        self._job_retention_seconds = int(job_retention_seconds)
        self._maintenance_interval = math.inf if self._test_mode else max(0.05, float(maintenance_interval))
        self.workers = WorkerPool(
            persistence=self.persistence,
            queue=self.queue,
            providers=self.providers,
            rate_limiter=self.rate_limiter,
            templates=self.templates,
            retry=self.retry,
            metrics=self.metrics,
            concurrency=worker_concurrency,
            poll_interval=math.inf if self._test_mode else poll_interval,
            expire_after=self._expire_after,
            on_status_change=self._on_status_change,
            log_delivery_activity=log_delivery_activity,
        )
        self.reconciler = WebhookReconciler(
            self.persistence, self.metrics, on_status_change=self._on_status_change
        )
        self._active = start_active
        self.workers.paused = not start_active
        self._stop = asyncio.Event()
        self._task_maintenance: asyncio.Task | None = None

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(time.time())

    async def init(self) -> None:
        """Initialise persistence and the pending jobs gauge."""
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start delivery workers and maintenance tasks."""
        self.logger.debug("Starting CommsDispatchCore...")
        await self.init()
        self._stop.clear()
        if not self._test_mode:
            self.workers.start()
            self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="comms-maintenance-loop")
        self.logger.debug("Background tasks created (test_mode=%s)", self._test_mode)

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        await self.workers.stop()
        if self._task_maintenance is not None:
            self._task_maintenance.cancel()
            await asyncio.gather(self._task_maintenance, return_exceptions=True)
            self._task_maintenance = None
        await self.providers.close()

    async def _maintenance_loop(self) -> None:
        """Expire overdue scheduled sends, purge old jobs and keep SMTP pools healthy."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self._maintenance_interval):
                    await self._stop.wait()
                return
            except TimeoutError:
                pass
            try:
                await self.run_maintenance()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in maintenance loop: %s", exc)

    async def run_maintenance(self, now_ts: int | None = None) -> dict[str, int]:
        now_ts = self._utc_now_epoch() if now_ts is None else int(now_ts)
        expired = await self.expire_overdue(now_ts)
        purged = 0
        if self._job_retention_seconds > 0:
            purged = await self.queue.purge_completed_before(now_ts - self._job_retention_seconds)
        await self.persistence.purge_send_log_before(now_ts - SEND_LOG_RETENTION)
        for adapter in self.providers:
            pool = getattr(adapter, "pool", None)
            if pool is not None:
                await pool.cleanup()
        await self._refresh_queue_gauge()
        return {"expired": expired, "purged_jobs": purged}

    async def expire_overdue(self, now_ts: int | None = None) -> int:
        """Expire pending scheduled communications past their deadline."""
        now_ts = self._utc_now_epoch() if now_ts is None else int(now_ts)
        candidates = await self.persistence.list_expirable(now_ts - self._expire_after)
        expired = 0
        bulk_ids: set[str] = set()
        for row in candidates:
            if await self.persistence.transition(row["id"], [lifecycle.PENDING], lifecycle.EXPIRED):
                await self.queue.cancel_for_communication(row["id"])
                expired += 1
                if row.get("bulk_id"):
                    bulk_ids.add(row["bulk_id"])
        for bulk_id in bulk_ids:
            await self.bulk.refresh(bulk_id)
        if expired:
            self.logger.info("Expired %d overdue scheduled communication(s)", expired)
        return expired

    # ------------------------------------------------------------------ sending
    async def send(self, request: SendRequest | dict[str, Any]) -> dict[str, Any]:
        """Validate, persist and enqueue a single communication.

        Raises:
            ValidationError: no valid recipient, no content or template, or no
                provider for the channel. Nothing is stored in that case.
        """
        if not isinstance(request, SendRequest):
            request = SendRequest.model_validate(request)
        comm_type = enum_value(request.type)
        normalized = self.normalizer.normalize(request.to, comm_type)
        settings = self.builder.resolve_settings(request.settings)
        self.builder.check_provider(comm_type, settings)
        template = self.builder.template_ref(request.template_id, request.template, request.data)
        content = self.builder.prepare_content(comm_type, request.content, template)

        record = self.builder.new_record(
            comm_type=comm_type,
            to=normalized.addresses,
            recipients=normalized.records,
            content=content,
            template=template,
            priority=request.priority,
            scheduled_ts=request.scheduled_ts,
            settings=settings,
            context=request.context,
            metadata=request.metadata,
        )
        await self.persistence.insert_communication(record)
        await self.builder.enqueue(record)
        await self._refresh_queue_gauge()
        stored = await self.persistence.get_communication(record["id"])
        self.logger.debug("Accepted %s communication %s", comm_type, record["id"])
        return {"communication_id": record["id"], "status": stored["status"] if stored else record["status"]}

    async def send_bulk(self, request: BulkSendRequest | dict[str, Any]) -> BulkCommunication:
        if not isinstance(request, BulkSendRequest):
            request = BulkSendRequest.model_validate(request)
        bulk = await self.bulk.send_bulk(request)
        await self._refresh_queue_gauge()
        return bulk

    # ------------------------------------------------------------------ queries
    async def _load(self, communication_id: str) -> dict[str, Any]:
        record = await self.persistence.get_communication(communication_id)
        if record is None:
            raise CommunicationNotFound(f"Communication '{communication_id}' not found")
        return record

    async def get_by_id(self, communication_id: str) -> Communication:
        return Communication.from_record(await self._load(communication_id))

    async def list(self, query: ListQuery | dict[str, Any] | None = None) -> dict[str, Any]:
        """Return one page of communications matching the filters."""
        if not isinstance(query, ListQuery):
            query = ListQuery.model_validate(query or {})
        filters = query.model_dump(exclude={"page", "limit"}, exclude_none=True)
        total = await self.persistence.count_communications(filters)
        rows = await self.persistence.list_communications(
            filters, limit=query.limit, offset=(query.page - 1) * query.limit
        )
        return {
            "items": [Communication.from_record(row) for row in rows],
            "pagination": {
                "page": query.page,
                "limit": query.limit,
                "total": total,
                "pages": math.ceil(total / query.limit) if total else 0,
            },
        }

    async def list_events(self, communication_id: str) -> list[dict[str, Any]]:
        await self._load(communication_id)
        return await self.persistence.list_events(communication_id)

    async def get_bulk(self, bulk_id: str) -> BulkCommunication:
        return await self.bulk.refresh(bulk_id)

    async def get_delivery_status(self, communication_id: str) -> DeliveryStatus:
        """Return the stored delivery status, refreshed from the provider when it can be polled."""
        record = await self._load(communication_id)
        stored = DeliveryStatus.model_validate(record.get("delivery_status") or {"status": record["status"]})
        provider_name = record.get("provider")
        provider_message_id = record.get("provider_message_id")
        if not provider_name or not provider_message_id or provider_name not in self.providers:
            return stored
        try:
            polled = await self.providers.get(provider_name).get_status(provider_message_id)
        except (ProviderError, aiohttp.ClientError, TimeoutError) as exc:
            self.logger.warning("Status poll for %s via %s failed: %s", communication_id, provider_name, exc)
            return stored
        if polled.status == "unknown":
            return stored
        return polled

    async def provider_balances(self) -> dict[str, float | None]:
        balances: dict[str, float | None] = {}
        for adapter in self.providers:
            try:
                balances[adapter.name] = await adapter.get_balance()
            except (ProviderError, aiohttp.ClientError, TimeoutError) as exc:
                self.logger.warning("Balance lookup for %s failed: %s", adapter.name, exc)
                balances[adapter.name] = None
        return balances

    # -------------------------------------------------------------- cancellation
    async def _cancel_communication(self, communication_id: str) -> bool:
        if not await self.persistence.transition(
            communication_id, sorted(lifecycle.CANCELLABLE), lifecycle.CANCELLED
        ):
            return False
        await self.queue.cancel_for_communication(communication_id)
        return True

    async def cancel(self, communication_id: str) -> bool:
        """Cancel a communication still on the send path; ``False`` once it has left it."""
        record = await self._load(communication_id)
        if not await self._cancel_communication(communication_id):
            return False
        self.logger.info("Communication %s cancelled", communication_id)
        if record.get("bulk_id"):
            await self.bulk.refresh(record["bulk_id"])
        await self._refresh_queue_gauge()
        return True

    async def cancel_bulk(self, bulk_id: str) -> BulkCommunication:
        bulk = await self.bulk.cancel_bulk(bulk_id, self._cancel_communication)
        await self._refresh_queue_gauge()
        return bulk

    # ----------------------------------------------------------------- webhooks
    async def handle_webhook(self, payload: Any, provider: str | None = None) -> dict[str, Any]:
        """Reconcile an inbound provider webhook; correlation problems never fail the call."""
        try:
            results = await self.reconciler.handle(payload, provider)
        except (UnknownCorrelation, StaleTransition) as exc:
            self.logger.warning("Webhook from %s not applied: %s", provider or "generic", exc)
            return {"ok": True, "processed": 0, "results": []}
        return {
            "ok": True,
            "processed": len(results),
            "results": [
                {"communication_id": r.communication_id, "event": r.event_type, "outcome": r.outcome}
                for r in results
            ],
        }

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            if self._test_mode:
                processed = await self.run_now()
                return {"ok": True, "processed": processed}
            self.queue.notify()
            return {"ok": True}
        if cmd == "suspend":
            self._active = False
            self.workers.paused = True
            return {"ok": True, "active": False}
        if cmd == "activate":
            self._active = True
            self.workers.paused = False
            self.queue.notify()
            return {"ok": True, "active": True}
        if cmd == "listProviders":
            return {"ok": True, "providers": self.providers.describe()}
        if cmd == "cancel":
            communication_id = payload.get("id") if isinstance(payload, dict) else None
            if not communication_id:
                return {"ok": False, "error": "missing 'id'"}
            try:
                cancelled = await self.cancel(communication_id)
            except CommsError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": True, "cancelled": cancelled}
        return {"ok": False, "error": "unknown command"}

    async def run_now(self, now_ts: int | None = None) -> int:
        """Drain every ready job in the calling task."""
        processed = await self.workers.run_once(now_ts)
        await self._refresh_queue_gauge()
        return processed

    @property
    def active(self) -> bool:
        return self._active

    # ------------------------------------------------------------ housekeeping
    async def _on_status_change(self, record: dict[str, Any]) -> None:
        bulk_id = record.get("bulk_id")
        if bulk_id:
            await self.bulk.refresh(bulk_id)

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing open dispatch jobs."""
        try:
            count = await self.queue.count_ready()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending jobs gauge")
            return
        self.metrics.set_pending(count)


__all__ = ["CommsDispatchCore"]
