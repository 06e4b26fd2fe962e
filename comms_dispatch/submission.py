# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Turning accepted requests into stored communications and dispatch jobs.

Shared by single and bulk sends. Everything here runs on the caller's
path: validation, one insert per communication and one insert per job, and
no provider I/O.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from . import lifecycle
from .dispatch_queue import DispatchQueue, JobHandle, job_name_for
from .errors import ProviderNotFound, ValidationError
from .logger import get_logger
from .models import (
    DEFAULT_PRIORITY,
    CommContent,
    CommContext,
    CommSettings,
    CommType,
    Recipient,
    TemplateRef,
    enum_value,
)
from .persistence import Persistence
from .providers import ProviderRegistry, count_segments, detect_encoding


def new_id() -> str:
    return str(uuid.uuid4())


class SubmissionBuilder:
    """Validate request parts and build communication records and jobs."""

    def __init__(
        self,
        persistence: Persistence,
        queue: DispatchQueue,
        providers: ProviderRegistry,
        *,
        default_settings: CommSettings | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.providers = providers
        self.default_settings = default_settings or CommSettings()
        self.logger = logger or get_logger("CommsDispatch.submission")

    @staticmethod
    def _now() -> int:
        return int(time.time())

    # -------------------------------------------------------------- validation
    def resolve_settings(self, settings: CommSettings | dict[str, Any] | None) -> CommSettings:
        """Overlay per-request settings on the service defaults."""
        merged = self.default_settings.model_dump()
        if isinstance(settings, CommSettings):
            merged.update(settings.model_dump(exclude_unset=True))
        elif settings:
            merged.update(CommSettings.model_validate(settings).model_dump(exclude_unset=True))
        return CommSettings.model_validate(merged)

    def check_provider(self, comm_type: str, settings: CommSettings) -> str:
        """Return the provider name that will serve the request.

        Raises:
            ProviderNotFound: when no adapter serves ``comm_type``.
        """
        return self.providers.select(comm_type, settings.provider).name

    @staticmethod
    def template_ref(
        template_id: str | None, inline: dict[str, Any] | None, data: dict[str, Any] | None
    ) -> TemplateRef | None:
        if not template_id and not inline:
            return None
        return TemplateRef(template_id=template_id, inline=inline or None, data=dict(data or {}))

    @staticmethod
    def prepare_content(
        comm_type: str, content: CommContent | dict[str, Any] | None, template: TemplateRef | None
    ) -> CommContent:
        """Validate content and fill channel specific fields (SMS encoding and segments)."""
        if isinstance(content, dict):
            content = CommContent.model_validate(content)
        has_content = content is not None and any(
            (content.body, content.html, content.text, content.data)
        )
        if not has_content and template is None:
            raise ValidationError("Either content or a template is required", code="missing_content")
        content = content or CommContent()
        if comm_type == CommType.SMS and has_content:
            text = content.body or content.text or ""
            encoding = content.encoding or detect_encoding(text)
            content = content.model_copy(update={"encoding": encoding, "segments": count_segments(text, encoding)})
        return content

    # ----------------------------------------------------------------- records
    def new_record(
        self,
        *,
        comm_type: str,
        to: list[str],
        recipients: list[Recipient],
        content: CommContent,
        template: TemplateRef | None,
        priority: str | None,
        scheduled_ts: int | None,
        settings: CommSettings,
        context: CommContext | None,
        metadata: dict[str, Any] | None = None,
        bulk_id: str | None = None,
    ) -> dict[str, Any]:
        return {
            "id": new_id(),
            "bulk_id": bulk_id,
            "type": enum_value(comm_type),
            "status": lifecycle.PENDING,
            "priority": enum_value(priority) or DEFAULT_PRIORITY,
            "to": list(to),
            "recipients": [r.model_dump(exclude_none=True) for r in recipients],
            "content": content.model_dump(exclude_none=True),
            "template": template.model_dump() if template else None,
            "provider": settings.provider,
            "scheduled_ts": int(scheduled_ts) if scheduled_ts is not None else None,
            "settings": settings.model_dump(),
            "context": (context or CommContext()).model_dump(exclude_none=True),
            "metadata": dict(metadata or {}),
            "attempt": 0,
            "retry_count": 0,
        }

    @staticmethod
    def job_payload(record: dict[str, Any], job_name: str) -> dict[str, Any]:
        payload = {
            "jobName": job_name,
            "communicationId": record["id"],
            "type": record["type"],
            "to": record["to"],
            "priority": record["priority"],
            "settings": record["settings"],
            "context": record["context"],
            "attempt": int(record.get("attempt") or 0),
        }
        if record.get("template"):
            payload["template"] = record["template"]
        else:
            payload["content"] = record["content"]
        return payload

    async def enqueue(self, record: dict[str, Any], *, bulk: bool = False, now_ts: int | None = None) -> JobHandle:
        """Insert the dispatch job for ``record`` and mark it queued unless scheduled later."""
        now_ts = self._now() if now_ts is None else int(now_ts)
        job_name = job_name_for(record["type"], bulk=bulk, templated=bool(record.get("template")))
        scheduled_ts = record.get("scheduled_ts")
        available_ts = max(now_ts, int(scheduled_ts)) if scheduled_ts is not None else now_ts
        handle = await self.queue.enqueue(
            job_name,
            self.job_payload(record, job_name),
            priority=record["priority"],
            available_ts=available_ts,
        )
        if available_ts <= now_ts:
            await self.persistence.transition(record["id"], [lifecycle.PENDING], lifecycle.QUEUED)
        return handle

    async def mark_failed(self, communication_id: str, code: str, message: str) -> bool:
        """Fail a communication that never reached a provider.

        Walks the legal path ``pending -> queued -> sending -> failed``.
        """
        await self.persistence.transition(communication_id, [lifecycle.PENDING], lifecycle.QUEUED)
        await self.persistence.transition(communication_id, [lifecycle.QUEUED], lifecycle.SENDING)
        return await self.persistence.transition(
            communication_id,
            [lifecycle.SENDING],
            lifecycle.FAILED,
            {"error": {"code": code, "message": message}},
        )


__all__ = ["ProviderNotFound", "SubmissionBuilder", "new_id"]
