# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the communications dispatcher.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - Recipient: Structured recipient record (email, phone, device token, URL)
    - CommContent: Channel specific payload
    - CommSettings: Per-message delivery overrides
    - CommContext: Tracing/business metadata carried through untouched
    - Communication: One outbound message attempt
    - BulkCommunication: Aggregate request fanned out into communications
    - SendRequest / BulkSendRequest: Caller facing requests
    - WebhookPayload: Provider-agnostic inbound webhook shape
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field


class CommType(str, Enum):
    """Delivery channels."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"


class CommStatus(str, Enum):
    """Lifecycle states of a :class:`Communication`.

    See :mod:`comms_dispatch.lifecycle` for the allowed transitions.
    """

    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CommPriority(str, Enum):
    """Advisory ordering hint for the dispatch queue."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def enum_value(value: Any) -> Any:
    """Return the plain value of enum members, anything else unchanged."""
    return value.value if isinstance(value, Enum) else value


PRIORITY_RANKS = {
    "urgent": 0,
    "high": 1,
    "normal": 2,
    "low": 3,
}
RANK_TO_PRIORITY = {rank: label for label, rank in PRIORITY_RANKS.items()}
DEFAULT_PRIORITY = "normal"


class BulkStatus(str, Enum):
    """States of a :class:`BulkCommunication`, derived from its constituents."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WebhookEventType(str, Enum):
    """Canonical, provider independent delivery events."""

    DELIVERY = "delivery"
    BOUNCE = "bounce"
    COMPLAINT = "complaint"
    OPEN = "open"
    CLICK = "click"
    FAILED = "failed"


class Recipient(BaseModel):
    """Structured recipient record.

    Only the field matching the channel is used as address; the rest travels
    with the communication (``name``, ``metadata``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str | None = None
    phone_number: Annotated[str | None, Field(default=None, alias="phoneNumber")]
    token: str | None = None
    url: str | None = None
    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CommContent(BaseModel):
    """Channel appropriate payload.

    Attributes:
        subject: Email subject.
        body: Main body (plain text, SMS text, push body).
        html: Email HTML alternative.
        text: Email text alternative (defaults to ``body``).
        title: Push notification title.
        data: Push/webhook structured data.
        segments: SMS segment count, computed on submission.
        encoding: SMS encoding (``GSM_7BIT`` or ``UCS2``).
    """

    model_config = ConfigDict(extra="ignore")

    subject: str | None = None
    body: str = ""
    html: str | None = None
    text: str | None = None
    title: str | None = None
    data: dict[str, Any] | None = None
    segments: int | None = None
    encoding: str | None = None


class TemplateRef(BaseModel):
    """Template reference: stored template id or inline template (inline wins)."""

    model_config = ConfigDict(populate_by_name=True)

    template_id: Annotated[str | None, Field(default=None, alias="templateId")]
    inline: dict[str, Any] | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class CommSettings(BaseModel):
    """Per-message overrides of the delivery policy."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enable_delivery_reports: Annotated[
        bool, Field(default=True, alias="enableDeliveryReports")
    ]
    max_retries: Annotated[
        int, Field(default=3, ge=0, alias="maxRetries", description="Retries after the first attempt")
    ]
    retry_interval: Annotated[
        float, Field(default=5, ge=0, alias="retryInterval", description="Delay between attempts, in retry units")
    ]
    timeout: Annotated[
        float, Field(default=30, gt=0, description="Upper bound for one provider call, seconds")
    ]
    provider: str | None = None
    webhook_url: Annotated[str | None, Field(default=None, alias="webhookUrl")]


class CommContext(BaseModel):
    """Tracing and business metadata; opaque to the engine."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    user_id: Annotated[str | None, Field(default=None, alias="userId")]
    org_id: Annotated[str | None, Field(default=None, alias="orgId")]
    campaign_id: Annotated[str | None, Field(default=None, alias="campaignId")]
    request_id: Annotated[str | None, Field(default=None, alias="requestId")]
    ip_address: Annotated[str | None, Field(default=None, alias="ipAddress")]
    user_agent: Annotated[str | None, Field(default=None, alias="userAgent")]
    source: str | None = None
    tags: list[str] = Field(default_factory=list)


class CommError(BaseModel):
    """Failure details stored on failed/bounced communications."""

    code: str
    message: str
    provider: str | None = None
    retry_count: int | None = None


class DeliveryStatus(BaseModel):
    """Delivery information reported by a provider (poll or webhook)."""

    status: str = "unknown"
    provider_status: str | None = None
    provider_error: str | None = None
    delivered_ts: int | None = None
    cost: float | None = None
    last_updated: int | None = None


class Communication(BaseModel):
    """One outbound message attempt, as stored by the message store."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    type: CommType
    status: CommStatus
    priority: CommPriority = CommPriority.NORMAL
    to: list[str]
    recipients: list[Recipient] = Field(default_factory=list)
    content: CommContent = Field(default_factory=CommContent)
    template: TemplateRef | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    scheduled_ts: int | None = None
    sent_ts: int | None = None
    delivered_ts: int | None = None
    cost: float | None = None
    delivery_status: DeliveryStatus | None = None
    error: CommError | None = None
    settings: CommSettings = Field(default_factory=CommSettings)
    context: CommContext = Field(default_factory=CommContext)
    metadata: dict[str, Any] = Field(default_factory=dict)
    bulk_id: str | None = None
    attempt: int = 0
    retry_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Communication":
        """Build the model from a stored row, letting defaults fill empty columns."""
        return cls.model_validate({key: value for key, value in record.items() if value is not None})


class BulkProgress(BaseModel):
    """Aggregate progress, always recomputed from constituent statuses."""

    total: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0
    percentage: int = 0


class BulkCommunication(BaseModel):
    """A bulk request fanned out into one communication per recipient."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    name: str
    description: str | None = None
    type: CommType
    priority: CommPriority = CommPriority.NORMAL
    recipients: list[Recipient] = Field(default_factory=list)
    communication_ids: list[str] = Field(default_factory=list)
    content: CommContent | None = None
    template: TemplateRef | None = None
    settings: CommSettings = Field(default_factory=CommSettings)
    context: CommContext = Field(default_factory=CommContext)
    status: BulkStatus = BulkStatus.DRAFT
    progress: BulkProgress = Field(default_factory=BulkProgress)
    scheduled_ts: int | None = None
    started_ts: int | None = None
    completed_ts: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "BulkCommunication":
        return cls.model_validate({key: value for key, value in record.items() if value is not None})


class SendRequest(BaseModel):
    """Request to send a single communication."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    type: CommType
    to: str | list[str | Recipient]
    template_id: Annotated[str | None, Field(default=None, alias="templateId")]
    template: dict[str, Any] | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    content: CommContent | None = None
    priority: CommPriority | None = None
    scheduled_ts: Annotated[int | None, Field(default=None, alias="scheduledAt")]
    context: CommContext | None = None
    settings: CommSettings | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkSendRequest(BaseModel):
    """Request to send the same communication to many recipients."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    name: str
    description: str | None = None
    type: CommType
    recipients: list[str | Recipient]
    template_id: Annotated[str | None, Field(default=None, alias="templateId")]
    template: dict[str, Any] | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    content: CommContent | None = None
    priority: CommPriority | None = None
    scheduled_ts: Annotated[int | None, Field(default=None, alias="scheduledAt")]
    context: CommContext | None = None
    settings: CommSettings | None = None


class WebhookError(BaseModel):
    code: str | None = None
    message: str | None = None


class WebhookPayload(BaseModel):
    """Canonical inbound webhook shape; every field is optional."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    message_id: Annotated[str | None, Field(default=None, alias="messageId")]
    communication_id: Annotated[str | None, Field(default=None, alias="communicationId")]
    recipient: str | Recipient | None = None
    status: str | None = None
    event_type: str | None = None
    type: str | None = None
    error: WebhookError | None = None
    cost: str | float | None = None
    timestamp: str | float | None = None
    metadata: dict[str, Any] | None = None


class ListQuery(BaseModel):
    """Filters and pagination for listing communications."""

    model_config = ConfigDict(use_enum_values=True)

    type: CommType | None = None
    status: CommStatus | None = None
    priority: CommPriority | None = None
    bulk_id: str | None = None
    campaign_id: str | None = None
    provider: str | None = None
    page: Annotated[int, Field(default=1, ge=1)]
    limit: Annotated[int, Field(default=20, ge=1, le=200)]


__all__ = [
    "BulkCommunication",
    "BulkProgress",
    "BulkSendRequest",
    "BulkStatus",
    "CommContent",
    "CommContext",
    "CommError",
    "CommPriority",
    "CommSettings",
    "CommStatus",
    "CommType",
    "Communication",
    "DEFAULT_PRIORITY",
    "DeliveryStatus",
    "ListQuery",
    "PRIORITY_RANKS",
    "RANK_TO_PRIORITY",
    "Recipient",
    "SendRequest",
    "TemplateRef",
    "WebhookError",
    "WebhookEventType",
    "WebhookPayload",
]
