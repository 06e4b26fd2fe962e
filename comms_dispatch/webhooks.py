# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Inbound provider webhooks.

Each provider reports delivery outcomes in its own shape. Translators turn
those payloads into :class:`CanonicalEvent` objects; the
:class:`WebhookReconciler` correlates each event with a stored
communication, records it once (keyed by an idempotency key, so provider
retries are harmless) and applies the implied status change. Only the
delivery path is written here; reports for records the workers have not
handed off yet are ignored without being stored::

    delivery      sent -> delivered
    bounce        sent -> bounced
    failed        sent -> failed
    open / click  sent -> delivered (engagement implies delivery)
    complaint     recorded only
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from . import lifecycle
from .errors import StaleTransition, UnknownCorrelation
from .logger import get_logger
from .models import WebhookEventType, WebhookPayload
from .persistence import Persistence
from .prometheus import CommsMetrics
from .providers import parse_cost

CANONICAL_EVENTS = {event.value for event in WebhookEventType}

StatusCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class CanonicalEvent:
    """Provider independent delivery event."""

    event_type: str | None
    provider: str
    provider_message_id: str | None = None
    communication_id: str | None = None
    provider_status: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    cost: float | None = None
    timestamp: int | None = None
    event_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def idempotency_key(self) -> str:
        """Provider event id when available, otherwise a digest of the event."""
        if self.event_id:
            return f"{self.provider}:{self.event_id}"
        raw = "|".join(
            str(part or "")
            for part in (
                self.provider,
                self.communication_id or self.provider_message_id,
                self.event_type,
                self.provider_status,
                self.timestamp,
            )
        )
        return f"{self.provider}:{hashlib.sha256(raw.encode('utf-8')).hexdigest()}"


@dataclass
class ReconcileResult:
    communication_id: str | None
    event_type: str | None
    outcome: str
    status: str | None = None


# ------------------------------------------------------------------ parsing helpers
def _parse_timestamp(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in webhook payloads.
        return int(value / 1000) if value > 10_000_000_000 else int(value)
    text = str(value).strip()
    try:
        return _parse_timestamp(float(text))
    except ValueError:
        pass
    try:
        return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None


def classify_keyword(value: str | None) -> str | None:
    """Map free-form provider wording onto a canonical event type."""
    if not value:
        return None
    text = value.lower()
    if any(word in text for word in ("fail", "reject", "undeliver", "dropped", "expired")):
        return WebhookEventType.FAILED.value
    if "bounce" in text:
        return WebhookEventType.BOUNCE.value
    if "complain" in text or "spam" in text:
        return WebhookEventType.COMPLAINT.value
    if "deliver" in text or text == "success":
        return WebhookEventType.DELIVERY.value
    if "open" in text:
        return WebhookEventType.OPEN.value
    if "click" in text:
        return WebhookEventType.CLICK.value
    return None


# ------------------------------------------------------------------ translators
SENDGRID_EVENTS = {
    "delivered": WebhookEventType.DELIVERY.value,
    "bounce": WebhookEventType.BOUNCE.value,
    "dropped": WebhookEventType.FAILED.value,
    "spamreport": WebhookEventType.COMPLAINT.value,
    "open": WebhookEventType.OPEN.value,
    "click": WebhookEventType.CLICK.value,
}


def _sendgrid_communication_id(item: dict[str, Any]) -> str | None:
    # custom_args are flattened into the event; legacy senders used unique_args.
    if item.get("communication_id"):
        return str(item["communication_id"])
    unique_args = item.get("unique_args")
    if isinstance(unique_args, dict):
        value = unique_args.get("communication_id") or unique_args.get("emailId")
        return str(value) if value else None
    return str(item["emailId"]) if item.get("emailId") else None


def translate_sendgrid(payload: Any, provider: str = "sendgrid") -> list[CanonicalEvent]:
    """SendGrid Event Webhook: a JSON array of events."""
    items = payload if isinstance(payload, list) else [payload]
    events = []
    for item in items:
        if not isinstance(item, dict):
            continue
        raw = item.get("event")
        message_id = item.get("sg_message_id")
        events.append(
            CanonicalEvent(
                event_type=SENDGRID_EVENTS.get(str(raw).lower(), raw),
                provider=provider,
                provider_message_id=str(message_id).split(".", 1)[0] if message_id else None,
                communication_id=_sendgrid_communication_id(item),
                provider_status=raw,
                error_code=str(item["status"]) if item.get("status") else None,
                error_message=item.get("reason"),
                timestamp=_parse_timestamp(item.get("timestamp")),
                event_id=item.get("sg_event_id"),
                metadata={"email": item.get("email")} if item.get("email") else {},
            )
        )
    return events


RESEND_EVENTS = {
    "email.delivered": WebhookEventType.DELIVERY.value,
    "email.bounced": WebhookEventType.BOUNCE.value,
    "email.complained": WebhookEventType.COMPLAINT.value,
    "email.opened": WebhookEventType.OPEN.value,
    "email.clicked": WebhookEventType.CLICK.value,
    "email.failed": WebhookEventType.FAILED.value,
}


def translate_resend(payload: Any, provider: str = "resend") -> list[CanonicalEvent]:
    if not isinstance(payload, dict):
        return []
    raw = payload.get("type")
    data = payload.get("data") or {}
    bounce = data.get("bounce") or {}
    tags = data.get("tags") or {}
    communication_id = tags.get("communication_id") if isinstance(tags, dict) else None
    return [
        CanonicalEvent(
            event_type=RESEND_EVENTS.get(str(raw), raw),
            provider=provider,
            provider_message_id=data.get("email_id"),
            communication_id=communication_id,
            provider_status=raw,
            error_code=bounce.get("type"),
            error_message=bounce.get("message"),
            timestamp=_parse_timestamp(payload.get("created_at") or data.get("created_at")),
        )
    ]


AFRICASTALKING_EVENTS = {
    "success": WebhookEventType.DELIVERY.value,
    "failed": WebhookEventType.FAILED.value,
    "rejected": WebhookEventType.FAILED.value,
    "expired": WebhookEventType.FAILED.value,
}


def translate_africastalking(payload: Any, provider: str = "africastalking") -> list[CanonicalEvent]:
    """Africa's Talking SMS delivery report (form or JSON fields)."""
    if not isinstance(payload, dict):
        return []
    raw = payload.get("status")
    return [
        CanonicalEvent(
            # Sent/Buffered are intermediate states and carry no outcome.
            event_type=AFRICASTALKING_EVENTS.get(str(raw).lower(), raw),
            provider=provider,
            provider_message_id=payload.get("id"),
            provider_status=raw,
            error_code=payload.get("failureReason"),
            error_message=payload.get("failureReason"),
            cost=parse_cost(payload.get("cost")),
            timestamp=_parse_timestamp(payload.get("timestamp")),
            metadata={
                key: payload[key]
                for key in ("phoneNumber", "networkCode", "retryCount")
                if payload.get(key) is not None
            },
        )
    ]


def translate_generic(payload: Any, provider: str = "generic") -> list[CanonicalEvent]:
    items = payload if isinstance(payload, list) else [payload]
    events = []
    for item in items:
        if not isinstance(item, dict):
            continue
        data = WebhookPayload.model_validate(item)
        explicit = data.event_type or data.type
        event_type = explicit if explicit in CANONICAL_EVENTS else classify_keyword(explicit or data.status)
        events.append(
            CanonicalEvent(
                event_type=event_type or explicit or data.status,
                provider=provider,
                provider_message_id=data.message_id,
                communication_id=data.communication_id,
                provider_status=data.status,
                error_code=data.error.code if data.error else None,
                error_message=data.error.message if data.error else None,
                cost=parse_cost(data.cost),
                timestamp=_parse_timestamp(data.timestamp),
                event_id=item.get("event_id") or item.get("id"),
                metadata=data.metadata or {},
            )
        )
    return events


TRANSLATORS: dict[str, Callable[[Any, str], list[CanonicalEvent]]] = {
    "sendgrid": translate_sendgrid,
    "resend": translate_resend,
    "africastalking": translate_africastalking,
    "generic": translate_generic,
}


def translate(payload: Any, provider: str | None = None) -> list[CanonicalEvent]:
    """Translate ``payload`` with the translator registered for ``provider``."""
    name = (provider or "generic").lower()
    translator = TRANSLATORS.get(name, translate_generic)
    return translator(payload, name)


# ------------------------------------------------------------------ reconciler
class WebhookReconciler:
    """Apply canonical events to stored communications, at most once each."""

    def __init__(
        self,
        persistence: Persistence,
        metrics: CommsMetrics,
        *,
        on_status_change: StatusCallback | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.metrics = metrics
        self.on_status_change = on_status_change
        self.logger = logger or get_logger("CommsDispatch.webhooks")

    @staticmethod
    def _now() -> int:
        return int(time.time())

    async def handle(self, payload: Any, provider: str | None = None) -> list[ReconcileResult]:
        """Translate and reconcile every event of one webhook delivery.

        Correlation and ordering problems are logged per event and do not
        stop the remaining events from being processed.
        """
        results = []
        for event in translate(payload, provider):
            try:
                results.append(await self.reconcile(event))
            except UnknownCorrelation as exc:
                self.logger.warning("Ignoring %s webhook event: %s", event.provider, exc)
                results.append(ReconcileResult(None, event.event_type, "unknown_correlation"))
            except StaleTransition as exc:
                self.logger.info("Ignoring out-of-order %s webhook event: %s", event.provider, exc)
                results.append(ReconcileResult(exc.communication_id, event.event_type, "stale", exc.current))
        return results

    async def _correlate(self, event: CanonicalEvent) -> dict[str, Any]:
        record = None
        if event.communication_id:
            record = await self.persistence.get_communication(event.communication_id)
        if record is None and event.provider_message_id:
            record = await self.persistence.find_by_provider_message_id(event.provider_message_id)
        if record is None:
            raise UnknownCorrelation(
                f"No communication for id={event.communication_id!r} "
                f"provider_message_id={event.provider_message_id!r}"
            )
        return record

    async def _record_event(self, communication_id: str, event: CanonicalEvent, now_ts: int) -> bool:
        return await self.persistence.add_event(
            communication_id=communication_id,
            event_key=event.idempotency_key(),
            event_type=event.event_type,
            event_ts=event.timestamp or now_ts,
            provider=event.provider,
            description=event.error_message or event.provider_status,
            metadata=event.metadata,
        )

    async def reconcile(self, event: CanonicalEvent) -> ReconcileResult:
        """Apply one event.

        Only delivery-path transitions (out of ``sent``) are written here. An
        event is stored, consuming its idempotency key, only once it has been
        applied or recorded; reports ignored while the record is still on the
        send path can therefore be replayed by the provider later.

        Raises:
            UnknownCorrelation: when no communication matches the event.
            StaleTransition: when the event would move the record backwards.
        """
        if event.event_type not in CANONICAL_EVENTS:
            self.logger.info(
                "Ignoring unsupported %s webhook event type %r", event.provider, event.event_type
            )
            return ReconcileResult(event.communication_id, event.event_type, "ignored")

        record = await self._correlate(event)
        communication_id = record["id"]
        current = record["status"]
        self.metrics.inc_webhook_event(event.event_type)
        now_ts = self._now()

        if current in lifecycle.IN_FLIGHT:
            # The outcome arrived before the worker recorded the hand-off.
            self.logger.warning(
                "Event %s for %s arrived while it is %s; not applied",
                event.event_type,
                communication_id,
                current,
            )
            return ReconcileResult(communication_id, event.event_type, "ignored", current)

        if await self.persistence.has_event(event.idempotency_key()):
            self.logger.debug("Duplicate %s event for %s ignored", event.event_type, communication_id)
            return ReconcileResult(communication_id, event.event_type, "duplicate", current)

        target = self._target_status(event.event_type, current)
        if target is None or target == current:
            if not await self._record_event(communication_id, event, now_ts):
                return ReconcileResult(communication_id, event.event_type, "duplicate", current)
            await self._update_delivery_metadata(record, event, now_ts)
            return ReconcileResult(communication_id, event.event_type, "recorded", current)

        if current != lifecycle.SENT:
            if lifecycle.is_regression(current, target):
                raise StaleTransition(communication_id, current, target)
            self.logger.info(
                "Event %s for %s not applicable while it is %s", event.event_type, communication_id, current
            )
            return ReconcileResult(communication_id, event.event_type, "ignored", current)

        fields = self._fields_for(target, record, event, now_ts)
        if not await self.persistence.transition(communication_id, [lifecycle.SENT], target, fields):
            latest = await self.persistence.get_communication(communication_id)
            latest_status = latest["status"] if latest else current
            if latest_status == target and not await self._record_event(communication_id, event, now_ts):
                return ReconcileResult(communication_id, event.event_type, "duplicate", latest_status)
            if latest_status == target:
                return ReconcileResult(communication_id, event.event_type, "recorded", latest_status)
            raise StaleTransition(communication_id, latest_status, target)

        await self._record_event(communication_id, event, now_ts)
        self.logger.info("Communication %s is now %s (%s webhook)", communication_id, target, event.provider)
        if self.on_status_change is not None:
            updated = await self.persistence.get_communication(communication_id)
            if updated is not None:
                await self.on_status_change(updated)
        return ReconcileResult(communication_id, event.event_type, "applied", target)

    @staticmethod
    def _target_status(event_type: str, current: str) -> str | None:
        if event_type == WebhookEventType.DELIVERY.value:
            return lifecycle.DELIVERED
        if event_type == WebhookEventType.BOUNCE.value:
            return lifecycle.BOUNCED
        if event_type == WebhookEventType.FAILED.value:
            return lifecycle.FAILED
        if event_type in (WebhookEventType.OPEN.value, WebhookEventType.CLICK.value):
            return lifecycle.DELIVERED if current == lifecycle.SENT else None
        return None

    @staticmethod
    def _fields_for(target: str, record: dict[str, Any], event: CanonicalEvent, now_ts: int) -> dict[str, Any]:
        delivery_status = dict(record.get("delivery_status") or {})
        delivery_status.update(
            {
                "status": target,
                "provider_status": event.provider_status,
                "last_updated": now_ts,
            }
        )
        fields: dict[str, Any] = {"delivery_status": delivery_status}
        if event.cost is not None:
            fields["cost"] = event.cost
            delivery_status["cost"] = event.cost
        if target == lifecycle.DELIVERED:
            delivered_ts = max(event.timestamp or now_ts, int(record.get("sent_ts") or 0))
            fields["delivered_ts"] = delivered_ts
            delivery_status["delivered_ts"] = delivered_ts
        else:
            message = event.error_message or f"Provider reported {event.event_type}"
            delivery_status["provider_error"] = message
            fields["error"] = {
                "code": event.error_code or event.event_type,
                "message": message,
                "provider": event.provider,
                "retry_count": record.get("retry_count"),
            }
        return fields

    async def _update_delivery_metadata(self, record: dict[str, Any], event: CanonicalEvent, now_ts: int) -> None:
        if event.cost is None and event.provider_status is None:
            return
        delivery_status = dict(record.get("delivery_status") or {})
        delivery_status.update({"provider_status": event.provider_status, "last_updated": now_ts})
        fields: dict[str, Any] = {"delivery_status": delivery_status}
        if event.cost is not None:
            fields["cost"] = event.cost
            delivery_status["cost"] = event.cost
        await self.persistence.update_communication_fields(record["id"], fields)


__all__ = [
    "CanonicalEvent",
    "ReconcileResult",
    "TRANSLATORS",
    "WebhookReconciler",
    "classify_keyword",
    "translate",
]
