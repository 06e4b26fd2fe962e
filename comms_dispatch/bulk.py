# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bulk orchestration.

A bulk request becomes one :class:`Communication` per normalized recipient.
The bulk record itself never owns a status of its own: progress and status
are recomputed from the constituents each time they are read or refreshed.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

from . import lifecycle
from .errors import BulkNotFound
from .logger import get_logger
from .models import (
    BulkCommunication,
    BulkProgress,
    BulkSendRequest,
    BulkStatus,
    CommContext,
    DEFAULT_PRIORITY,
    enum_value,
)
from .persistence import Persistence
from .recipients import RecipientNormalizer
from .submission import SubmissionBuilder, new_id

FAILED_STATUSES = (lifecycle.FAILED, lifecycle.BOUNCED, lifecycle.EXPIRED)


def compute_progress(counts: dict[str, int], total: int) -> BulkProgress:
    """Derive bulk progress from ``{status: count}`` of its communications.

    ``pending`` absorbs every constituent that has not reached an outcome,
    so ``sent + delivered + failed + cancelled + pending == total``.
    """
    sent = counts.get(lifecycle.SENT, 0)
    delivered = counts.get(lifecycle.DELIVERED, 0)
    failed = sum(counts.get(status, 0) for status in FAILED_STATUSES)
    cancelled = counts.get(lifecycle.CANCELLED, 0)
    pending = max(0, total - sent - delivered - failed - cancelled)
    done = sent + delivered + failed
    # Halves round up.
    percentage = (200 * done + total) // (2 * total) if total else 0
    return BulkProgress(
        total=total,
        sent=sent,
        delivered=delivered,
        failed=failed,
        cancelled=cancelled,
        pending=pending,
        percentage=percentage,
    )


def derive_status(
    progress: BulkProgress,
    counts: dict[str, int],
    *,
    scheduled_ts: int | None = None,
    now_ts: int | None = None,
) -> str:
    """Return the bulk status implied by its constituents."""
    if progress.total and progress.cancelled == progress.total:
        return BulkStatus.CANCELLED.value
    if progress.pending > 0:
        now_ts = int(time.time()) if now_ts is None else now_ts
        untouched = counts.get(lifecycle.PENDING, 0) == progress.pending
        if scheduled_ts is not None and scheduled_ts > now_ts and untouched:
            return BulkStatus.SCHEDULED.value
        return BulkStatus.SENDING.value
    if progress.total and progress.failed == progress.total - progress.cancelled:
        return BulkStatus.FAILED.value
    return BulkStatus.COMPLETED.value


class BulkOrchestrator:
    """Fan bulk requests out into communications and keep their aggregate view."""

    def __init__(
        self,
        persistence: Persistence,
        builder: SubmissionBuilder,
        normalizer: RecipientNormalizer,
        *,
        logger=None,
    ):
        self.persistence = persistence
        self.builder = builder
        self.normalizer = normalizer
        self.logger = logger or get_logger("CommsDispatch.bulk")

    @staticmethod
    def _now() -> int:
        return int(time.time())

    async def send_bulk(self, request: BulkSendRequest) -> BulkCommunication:
        """Create and enqueue one communication per valid recipient.

        Raises:
            ValidationError: when no recipient survives normalization, the
                content is missing or no provider serves the channel. Nothing
                is stored in that case.
        """
        comm_type = enum_value(request.type)
        normalized = self.normalizer.normalize(request.recipients, comm_type)
        settings = self.builder.resolve_settings(request.settings)
        self.builder.check_provider(comm_type, settings)
        template = self.builder.template_ref(request.template_id, request.template, request.data)
        content = self.builder.prepare_content(comm_type, request.content, template)
        context = request.context or CommContext()
        priority = enum_value(request.priority) or DEFAULT_PRIORITY
        now_ts = self._now()

        bulk_id = new_id()
        records: list[dict[str, Any]] = []
        for address, recipient in zip(normalized.addresses, normalized.records):
            recipient_template = None
            if template is not None:
                data = {**template.data, **recipient.metadata}
                if recipient.name:
                    data.setdefault("name", recipient.name)
                recipient_template = template.model_copy(update={"data": data})
            records.append(
                self.builder.new_record(
                    comm_type=comm_type,
                    to=[address],
                    recipients=[recipient],
                    content=content,
                    template=recipient_template,
                    priority=priority,
                    scheduled_ts=request.scheduled_ts,
                    settings=settings,
                    context=context,
                    metadata=recipient.metadata,
                    bulk_id=bulk_id,
                )
            )

        await self.persistence.insert_communications(records)
        communication_ids = [record["id"] for record in records]
        scheduled = request.scheduled_ts is not None and request.scheduled_ts > now_ts
        bulk_record = {
            "id": bulk_id,
            "name": request.name,
            "description": request.description,
            "type": comm_type,
            "priority": priority,
            "recipients": [r.model_dump(exclude_none=True) for r in normalized.records],
            "communication_ids": communication_ids,
            "content": content.model_dump(exclude_none=True),
            "template": template.model_dump() if template else None,
            "settings": settings.model_dump(),
            "context": context.model_dump(exclude_none=True),
            "status": BulkStatus.SCHEDULED.value if scheduled else BulkStatus.SENDING.value,
            "progress": compute_progress({lifecycle.PENDING: len(records)}, len(records)).model_dump(),
            "scheduled_ts": request.scheduled_ts,
            "started_ts": None if scheduled else now_ts,
        }
        await self.persistence.insert_bulk(bulk_record)

        for record in records:
            try:
                await self.builder.enqueue(record, bulk=True, now_ts=now_ts)
            except Exception as exc:
                self.logger.error("Failed to enqueue %s for bulk %s: %s", record["id"], bulk_id, exc)
                await self.builder.mark_failed(record["id"], "enqueue_failed", str(exc))

        self.logger.info(
            "Bulk %s accepted: %d communication(s), %d recipient(s) dropped",
            bulk_id,
            len(records),
            len(normalized.dropped),
        )
        return await self.refresh(bulk_id)

    async def _load(self, bulk_id: str) -> dict[str, Any]:
        record = await self.persistence.get_bulk(bulk_id)
        if record is None:
            raise BulkNotFound(f"Bulk communication '{bulk_id}' not found")
        return record

    async def progress(self, bulk_id: str) -> BulkProgress:
        record = await self._load(bulk_id)
        counts = await self.persistence.status_counts(bulk_id)
        return compute_progress(counts, len(record.get("communication_ids") or []))

    async def refresh(self, bulk_id: str) -> BulkCommunication:
        """Recompute progress and status from the constituents and store them."""
        record = await self._load(bulk_id)
        counts = await self.persistence.status_counts(bulk_id)
        progress = compute_progress(counts, len(record.get("communication_ids") or []))
        now_ts = self._now()
        status = derive_status(progress, counts, scheduled_ts=record.get("scheduled_ts"), now_ts=now_ts)
        fields: dict[str, Any] = {"progress": progress.model_dump(), "status": status}
        if status != BulkStatus.SCHEDULED.value:
            fields["started_ts"] = now_ts
        if progress.pending == 0:
            fields["completed_ts"] = now_ts
        await self.persistence.update_bulk(bulk_id, fields)
        return BulkCommunication.from_record(await self._load(bulk_id))

    async def cancel_bulk(self, bulk_id: str, cancel_one: Callable[[str], Awaitable[bool]]) -> BulkCommunication:
        """Cancel every constituent still on the send path."""
        await self._load(bulk_id)
        ids = await self.persistence.list_communication_ids_for_bulk(bulk_id, lifecycle.CANCELLABLE)
        cancelled = 0
        for communication_id in ids:
            if await cancel_one(communication_id):
                cancelled += 1
        self.logger.info("Bulk %s: cancelled %d of %d open communication(s)", bulk_id, cancelled, len(ids))
        return await self.refresh(bulk_id)


__all__ = ["BulkOrchestrator", "compute_progress", "derive_status"]
