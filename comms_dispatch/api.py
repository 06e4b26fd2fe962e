# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""
FastAPI application factory and HTTP schemas for the communications dispatcher.

The module exposes a `create_app` function that builds the REST API used to
submit communications, query their lifecycle and control the delivery
workers. Authentication is enforced through a configurable API token carried
in the ``X-API-Token`` header. Provider webhooks are the exception: they are
always accepted so providers never retry a delivery report.
"""

import secrets
from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import CommsDispatchCore
from .errors import BulkNotFound, CommsError, CommunicationNotFound, ValidationError
from .logger import get_logger
from .models import (
    BulkCommunication,
    BulkSendRequest,
    CommPriority,
    CommStatus,
    CommType,
    Communication,
    DeliveryStatus,
    ListQuery,
    SendRequest,
)

app = FastAPI(title="Communications Dispatch Service")
service: CommsDispatchCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None
logger = get_logger("CommsDispatch.api")


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or not secrets.compare_digest(api_token, expected):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: Optional[bool] = None


class RunNowResponse(CommandStatus):
    processed: Optional[int] = None


class SendResponse(CommandStatus):
    """Returned once a communication has been accepted."""
    communication_id: str
    status: CommStatus


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class CommunicationList(CommandStatus):
    items: List[Communication] = Field(default_factory=list)
    pagination: Pagination


class CommunicationEvent(BaseModel):
    """Delivery event recorded for a communication."""
    event_type: str
    event_ts: int
    provider: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class EventsResponse(CommandStatus):
    events: List[CommunicationEvent] = Field(default_factory=list)


class CancelResponse(CommandStatus):
    cancelled: bool


class WebhookResult(BaseModel):
    communication_id: Optional[str] = None
    event: Optional[str] = None
    outcome: str


class WebhookResponse(CommandStatus):
    processed: int = 0
    results: List[WebhookResult] = Field(default_factory=list)


class ProvidersResponse(CommandStatus):
    providers: List[Dict[str, Any]] = Field(default_factory=list)


class BalancesResponse(CommandStatus):
    balances: Dict[str, Optional[float]] = Field(default_factory=dict)


def _require_service() -> CommsDispatchCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: CommsDispatchCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`comms_dispatch.core.CommsDispatchCore` that
        implements the business logic behind each endpoint.
    api_token:
        Optional secret used to protect every endpoint except the provider
        webhooks. When provided, the ``X-API-Token`` header must match.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Communications Dispatch Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc), "code": exc.code})

    @api.exception_handler(CommunicationNotFound)
    @api.exception_handler(BulkNotFound)
    async def not_found(request: Request, exc: CommsError):
        return JSONResponse(status_code=404, content={"ok": False, "error": str(exc), "code": exc.code})

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        """Return a simple health status payload."""
        svc = _require_service()
        return StatusResponse(ok=True, active=svc.active)

    @api.post("/communications", response_model=SendResponse, status_code=202, dependencies=[auth_dependency])
    async def send(payload: SendRequest):
        """Accept a single communication for delivery."""
        result = await _require_service().send(payload)
        return SendResponse(ok=True, **result)

    @api.post("/communications/bulk", response_model=BulkCommunication, status_code=202, dependencies=[auth_dependency])
    async def send_bulk(payload: BulkSendRequest):
        """Fan a bulk request out into one communication per recipient."""
        return await _require_service().send_bulk(payload)

    @api.get("/communications", response_model=CommunicationList, dependencies=[auth_dependency])
    async def list_communications(
        type: Optional[CommType] = None,
        status: Optional[CommStatus] = None,
        priority: Optional[CommPriority] = None,
        bulk_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        provider: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=200),
    ):
        """List communications, newest first."""
        svc = _require_service()
        query = ListQuery(
            type=type,
            status=status,
            priority=priority,
            bulk_id=bulk_id,
            campaign_id=campaign_id,
            provider=provider,
            page=page,
            limit=limit,
        )
        result = await svc.list(query)
        return CommunicationList(ok=True, **result)

    @api.get("/communications/{communication_id}", response_model=Communication, dependencies=[auth_dependency])
    async def get_communication(communication_id: str):
        return await _require_service().get_by_id(communication_id)

    @api.get(
        "/communications/{communication_id}/delivery-status",
        response_model=DeliveryStatus,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def delivery_status(communication_id: str):
        """Return the delivery status, polling the provider when it supports it."""
        return await _require_service().get_delivery_status(communication_id)

    @api.get(
        "/communications/{communication_id}/events",
        response_model=EventsResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def communication_events(communication_id: str):
        events = await _require_service().list_events(communication_id)
        return EventsResponse(ok=True, events=events)

    @api.post(
        "/communications/{communication_id}/cancel",
        response_model=CancelResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def cancel(communication_id: str):
        """Cancel a communication that has not been handed to a provider yet."""
        cancelled = await _require_service().cancel(communication_id)
        if not cancelled:
            return CancelResponse(ok=False, cancelled=False, error="communication is no longer cancellable")
        return CancelResponse(ok=True, cancelled=True)

    @api.get("/bulk/{bulk_id}", response_model=BulkCommunication, dependencies=[auth_dependency])
    async def get_bulk(bulk_id: str):
        return await _require_service().get_bulk(bulk_id)

    @api.post("/bulk/{bulk_id}/cancel", response_model=BulkCommunication, dependencies=[auth_dependency])
    async def cancel_bulk(bulk_id: str):
        """Cancel every constituent of a bulk still waiting to be sent."""
        return await _require_service().cancel_bulk(bulk_id)

    @api.post("/webhooks/{provider}", response_model=WebhookResponse, response_model_exclude_none=True)
    async def webhook(provider: str, request: Request):
        """Receive a provider delivery report.

        JSON and form encoded bodies are accepted. The response is always a
        ``200`` so providers do not redeliver reports this service cannot use.
        """
        svc = _require_service()
        content_type = request.headers.get("content-type", "")
        try:
            if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
                payload: Any = dict(await request.form())
            else:
                payload = await request.json()
        except ValueError as exc:
            logger.warning("Unreadable webhook body from %s: %s", provider, exc)
            return WebhookResponse(ok=True, processed=0)
        try:
            result = await svc.handle_webhook(payload, provider)
        except (ValueError, CommsError) as exc:
            logger.warning("Webhook from %s rejected: %s", provider, exc)
            return WebhookResponse(ok=True, processed=0)
        return WebhookResponse.model_validate(result)

    @api.get("/providers", response_model=ProvidersResponse, dependencies=[auth_dependency])
    async def list_providers():
        """List the provider adapters known by the dispatcher."""
        result = await _require_service().handle_command("listProviders", {})
        return ProvidersResponse.model_validate(result)

    @api.get("/providers/balances", response_model=BalancesResponse, dependencies=[auth_dependency])
    async def provider_balances():
        balances = await _require_service().provider_balances()
        return BalancesResponse(ok=True, balances=balances)

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        svc = _require_service()
        result = await svc.handle_command("run now", {})
        return RunNowResponse.model_validate(result)

    @router.post("/suspend", response_model=StatusResponse, response_model_exclude_none=True)
    async def suspend():
        """Pause the delivery workers; submissions are still accepted."""
        svc = _require_service()
        result = await svc.handle_command("suspend", {})
        return StatusResponse.model_validate(result)

    @router.post("/activate", response_model=StatusResponse, response_model_exclude_none=True)
    async def activate():
        """Resume the delivery workers."""
        svc = _require_service()
        result = await svc.handle_command("activate", {})
        return StatusResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        svc = _require_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
