"""
FastAPI application factory and HTTP schemas for the bulk mail service.

The module exposes a `create_app` function that builds the REST API used by
the dashboard to send and schedule emails, inspect delivery history and
control the scheduler. Authentication is enforced through a configurable
API token carried in the ``X-API-Token`` header; the tracking pixel route is
always public because mail clients fetch it anonymously.
"""

from typing import Optional, Dict, Any, List, Literal, Union, Callable, AsyncContextManager
from datetime import datetime

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import AliasChoices, BaseModel, Field

from .core import BulkMailCore
from .errors import InvalidTransition, NotFoundError, StorageError, ValidationError
from .logger import get_logger
from .tracking import NO_CACHE_HEADERS, PIXEL_GIF, PIXEL_MEDIA_TYPE

app = FastAPI(title="Bulk Mail Service")
service: BulkMailCore | None = None
logger = get_logger("api")
API_TOKEN_HEADER_NAME = "X-API-Token"
SQLITE_MAX_INTEGER = 2**63 - 1
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class AttachmentPayload(BaseModel):
    """Inline attachment: file name plus base64 encoded content."""
    filename: str
    content: str


class SendEmailPayload(BaseModel):
    """Payload accepted by ``POST /api/send-bulk-email``.

    The dashboard field names (``message``, ``emails``, ``scheduledTime``)
    are accepted as aliases.
    """
    subject: str
    body: str = Field(validation_alias=AliasChoices("body", "message"))
    recipients: Union[List[str], str] = Field(validation_alias=AliasChoices("recipients", "emails"))
    attachments: Optional[List[AttachmentPayload]] = None
    scheduled_at: Optional[Union[datetime, int]] = Field(
        default=None, validation_alias=AliasChoices("scheduled_at", "scheduledTime")
    )


class DeliveryError(BaseModel):
    recipient: str
    error: str
    record_id: Optional[int] = None


class SendResponse(CommandStatus):
    """Aggregate result of a send; scheduled sends only carry ``job_id``."""
    scheduled: bool = False
    job_id: Optional[int] = None
    log_id: Optional[int] = None
    sent: int = 0
    failed: int = 0
    errors: List[DeliveryError] = Field(default_factory=list)
    message: Optional[str] = None


class EmailLogInfo(BaseModel):
    id: int
    recipients: List[str]
    subject: str
    body: str
    sent_ts: Optional[int] = None
    created_at: Optional[str] = None


class HistoryResponse(CommandStatus):
    logs: List[EmailLogInfo]


class ScheduledJobInfo(BaseModel):
    id: int
    recipients: List[str]
    subject: str
    body: str
    attachments: List[str] = Field(default_factory=list)
    scheduled_ts: int
    status: str
    email_log_id: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ScheduledResponse(CommandStatus):
    jobs: List[ScheduledJobInfo]


class ScheduledJobResponse(CommandStatus):
    job: ScheduledJobInfo


class CancelResponse(CommandStatus):
    id: int
    cancelled: bool
    status: str


class DeliveryRecordInfo(BaseModel):
    id: int
    email_log_id: int
    recipient: str
    status: str
    sent_ts: Optional[int] = None
    delivered_ts: Optional[int] = None
    failed_ts: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None


class DeliveryDetailResponse(CommandStatus):
    records: List[DeliveryRecordInfo]


class DeliveryUpdatePayload(BaseModel):
    """Manual correction of a delivery record."""
    status: Literal["sent", "delivered", "failed", "pending"]
    error_message: Optional[str] = None


class DeliveryUpdateResponse(CommandStatus):
    record: DeliveryRecordInfo


class StatsResponse(CommandStatus):
    stats: Dict[str, int]
    total: int


def _require_service() -> BulkMailCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _parse_record_id(raw: str) -> Optional[int]:
    """Return ``raw`` as a positive SQLite INTEGER, or ``None``."""
    try:
        value = int(raw)
    except ValueError:
        return None
    if value < 1 or value > SQLITE_MAX_INTEGER:
        return None
    return value


def _http_error(exc: Exception) -> HTTPException:
    """Translate pipeline exceptions into HTTP errors."""
    if isinstance(exc, ValidationError):
        return HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(status.HTTP_409_CONFLICT, str(exc))
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


def create_app(
    svc: BulkMailCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`bulk_mail_service.core.BulkMailCore` that
        implements the business logic for each route.
    api_token:
        Optional secret used to protect every endpoint except the tracking
        pixel. When provided, the ``X-API-Token`` header must match.
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
        api = FastAPI(title="Bulk Mail Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/api", tags=["emails"], dependencies=[auth_dependency])
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @router.post("/send-bulk-email", response_model=SendResponse, response_model_exclude_none=True)
    async def send_bulk_email(payload: SendEmailPayload):
        """Send now, or schedule when ``scheduled_at`` is in the future."""
        svc = _require_service()
        data = payload.model_dump(exclude_none=True)
        try:
            result = await svc.submit(data)
        except (ValidationError, StorageError) as exc:
            raise _http_error(exc)
        if result.scheduled:
            message = f"Email scheduled with job ID {result.job_id}"
        else:
            message = f"Emails processed. Sent: {result.sent}, Failed: {result.failed}"
        return SendResponse(ok=True, message=message, **result.to_dict())

    @router.get("/email-history", response_model=HistoryResponse, response_model_exclude_none=True)
    async def email_history():
        """List every email log, newest first."""
        svc = _require_service()
        return HistoryResponse(ok=True, logs=await svc.reporting.history())

    @router.get("/scheduled-emails", response_model=ScheduledResponse, response_model_exclude_none=True)
    async def scheduled_emails():
        """List jobs waiting to be sent, soonest first."""
        svc = _require_service()
        return ScheduledResponse(ok=True, jobs=await svc.reporting.scheduled())

    @router.get("/scheduled-emails/{job_id}", response_model=ScheduledJobResponse, response_model_exclude_none=True)
    async def scheduled_email(job_id: int):
        svc = _require_service()
        try:
            job = await svc.reporting.get_job(job_id)
        except NotFoundError as exc:
            raise _http_error(exc)
        return ScheduledJobResponse(ok=True, job=job)

    @router.delete("/scheduled-emails/{job_id}", response_model=CancelResponse, response_model_exclude_none=True)
    async def cancel_scheduled_email(job_id: int):
        """Cancel a scheduled email that has not been sent yet."""
        svc = _require_service()
        try:
            result = await svc.cancel(job_id)
        except (NotFoundError, StorageError) as exc:
            raise _http_error(exc)
        return CancelResponse.model_validate(result)

    @router.get("/email-delivery-status/{log_id}", response_model=DeliveryDetailResponse, response_model_exclude_none=True)
    async def delivery_status(log_id: int):
        """Per-recipient delivery rows of one email log."""
        svc = _require_service()
        return DeliveryDetailResponse(ok=True, records=await svc.reporting.delivery_detail(log_id))

    @router.put("/email-delivery-status/{record_id}", response_model=DeliveryUpdateResponse, response_model_exclude_none=True)
    async def update_delivery_status(record_id: int, payload: DeliveryUpdatePayload):
        """Manually correct the status of one delivery record."""
        svc = _require_service()
        try:
            record = await svc.update_delivery_status(record_id, payload.status, payload.error_message)
        except (ValidationError, NotFoundError, InvalidTransition) as exc:
            raise _http_error(exc)
        return DeliveryUpdateResponse(ok=True, record=record)

    @router.get("/email-delivery-stats", response_model=StatsResponse, response_model_exclude_none=True)
    async def delivery_stats():
        """Delivery record counts grouped by status."""
        svc = _require_service()
        stats = await svc.reporting.stats()
        return StatsResponse(ok=True, stats=stats, total=sum(stats.values()))

    @api.get("/api/track/{record_id}", include_in_schema=False)
    async def track(record_id: str):
        """Mark a record delivered and return a transparent 1x1 GIF.

        Any id is answered with the pixel; ids that cannot name a record are
        ignored.
        """
        parsed = _parse_record_id(record_id)
        if parsed is None:
            logger.debug("Ignoring tracking hit for invalid record id %r", record_id)
        elif service is not None:
            await service.track_open(parsed)
        else:
            logger.warning("Tracking hit for record %s before service initialisation", parsed)
        return Response(content=PIXEL_GIF, media_type=PIXEL_MEDIA_TYPE, headers=NO_CACHE_HEADERS)

    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the scheduler so due jobs are promoted immediately."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend promotion of scheduled jobs."""
        result = await _require_service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Resume promotion of scheduled jobs."""
        result = await _require_service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        svc = _require_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    api.include_router(commands)
    return api
