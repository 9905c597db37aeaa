"""
API v1 endpoints for the generation orchestrator.

Route handlers are thin: they translate HTTP to orchestrator calls and map
the error taxonomy onto status codes.
"""

from decimal import Decimal
import hmac
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
import structlog

from beatstudio.api.v1.schemas import (
    CallbackAck,
    DebugStateResponse,
    ErrorDetail,
    ErrorResponse,
    FeeResponse,
    HealthStatus,
    ItemListResponse,
    ItemResponse,
    NotificationResponse,
    SessionRequest,
    SessionResponse,
    TaskListResponse,
    TaskResponse,
)
from beatstudio.clients.ledger import WEI_PER_ETHER
from beatstudio.config import settings
from beatstudio.errors import (
    GenerationServiceError,
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidTransitionError,
    LedgerError,
    OrchestratorError,
    PollTransientError,
    SessionUnavailableError,
    TaskNotFoundError,
    UserRejectedError,
)
from beatstudio.orchestration.orchestrator import get_orchestrator
from beatstudio.tasks.models import Mode, RequestParams, ServiceStatus

logger = structlog.get_logger(__name__)

# Create API router
router = APIRouter(prefix="/api/v1", tags=["v1"])

# Checked in order; subclasses before their bases.
_ERROR_STATUS: list[tuple[type[OrchestratorError], int]] = [
    (SessionUnavailableError, status.HTTP_401_UNAUTHORIZED),
    (TaskNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InvalidRequestError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (GenerationServiceError, status.HTTP_502_BAD_GATEWAY),
    (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
    (UserRejectedError, status.HTTP_409_CONFLICT),
    (LedgerError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PollTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


# ===============================================================================
# Utility Functions
# ===============================================================================


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    task_id: str | None = None,
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=ErrorDetail(code=error_code, message=message),
        task_id=task_id,
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())


def error_to_response(error: OrchestratorError) -> JSONResponse:
    """Map an orchestrator error onto an HTTP error response."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    task = error.task
    task_id = getattr(task, "key", None) if task is not None else None
    return create_error_response(status_code, error.code, error.message, task_id)


def verify_callback_token(token: str | None) -> None:
    """Reject callbacks without the shared secret when one is configured."""
    expected = settings.callback_token
    if not expected:
        return
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid callback token"
        )


# ===============================================================================
# Health Check Endpoints
# ===============================================================================


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """
    Health check endpoint for load balancers and monitoring.

    Reports session state, pending work and dependency configuration.
    """
    orchestrator = get_orchestrator()

    dependencies = {
        "generation_service": "configured" if settings.generation_api_key else "missing",
        "storage": "configured" if settings.storage_api_token else "missing",
        "cache": orchestrator.cache.health_check()["cache"],
        "reconciliation": "running" if orchestrator.loop.is_running else "idle",
    }

    overall_status = (
        "healthy"
        if all(v in ("configured", "healthy", "running", "idle") for v in dependencies.values())
        else "degraded"
    )

    return HealthStatus(
        status=overall_status,
        service="beatstudio-orchestrator",
        version=settings.api_version,
        session_active=orchestrator.user_id is not None,
        pending_tasks=len(orchestrator.pending_set()),
        dependencies=dependencies,
    )


# ===============================================================================
# Session Endpoints
# ===============================================================================


@router.post("/session", response_model=SessionResponse)
async def connect_session(request: SessionRequest) -> SessionResponse:
    """
    Connect an account, or switch to it if another account is active.

    Switching discards the previous account's in-memory state and hydrates
    from the new account's cache.
    """
    orchestrator = get_orchestrator()
    await orchestrator.connect(request.user_id)
    return SessionResponse(
        user_id=orchestrator.user_id,
        items=len(orchestrator.items()),
        pending_tasks=len(orchestrator.pending_set()),
    )


@router.delete("/session", response_model=SessionResponse)
async def disconnect_session() -> SessionResponse:
    """Disconnect the active account and stop all polling."""
    orchestrator = get_orchestrator()
    await orchestrator.disconnect()
    return SessionResponse(user_id=None, items=0, pending_tasks=0)


# ===============================================================================
# Generation Endpoints
# ===============================================================================


@router.post(
    "/generate",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def generate(params: RequestParams) -> Any:
    """
    Submit a generation request and pay the generation fee.

    Returns once the payment transaction is broadcast; completion arrives
    through polling or the service callback.
    """
    orchestrator = get_orchestrator()
    try:
        task = await orchestrator.submit(params)
    except OrchestratorError as e:
        logger.warning("Generation request failed", error_type=e.code, error=e.message)
        return error_to_response(e)

    return TaskResponse.from_task(task)


@router.post("/callbacks/generation", response_model=CallbackAck)
async def generation_callback(
    request: Request,
    x_callback_token: str | None = Header(None),
    token: str | None = Query(None),
) -> CallbackAck:
    """
    Push channel for the generation service.

    Completion is applied through the same guard as polling, so a callback
    that races a poll result has no additional effect.
    """
    verify_callback_token(x_callback_token or token)

    try:
        payload = await request.json()
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Callback body is not JSON"
        ) from err

    orchestrator = get_orchestrator()
    try:
        report = await orchestrator.handle_callback(payload)
    except ValueError as err:
        logger.warning("Invalid callback payload", error=str(err))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid callback data: {err}"
        ) from err

    if report.status == ServiceStatus.ERROR:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid callback data"
        )

    return CallbackAck(message="Callback processed successfully", task_id=report.task_id)


# ===============================================================================
# Task Endpoints
# ===============================================================================


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks() -> Any:
    orchestrator = get_orchestrator()
    return TaskListResponse(
        tasks=[TaskResponse.from_task(t) for t in orchestrator.tasks()],
        pending=sorted(orchestrator.pending_set()),
    )


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> Any:
    orchestrator = get_orchestrator()
    try:
        return TaskResponse.from_task(orchestrator.get_task(task_id))
    except TaskNotFoundError as e:
        return error_to_response(e)


@router.post("/tasks/{task_id}/check", response_model=TaskResponse)
async def check_task(task_id: str) -> Any:
    """Poll the service now for a task whose callback may have been missed."""
    orchestrator = get_orchestrator()
    try:
        task = await orchestrator.check_task(task_id)
    except OrchestratorError as e:
        return error_to_response(e)
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/force-complete", response_model=TaskResponse)
async def force_complete_task(task_id: str) -> Any:
    """
    Manual override for a stuck task.

    Marks the task complete without a service result. Use only after
    verifying the payment transaction independently.
    """
    orchestrator = get_orchestrator()
    try:
        task = await orchestrator.force_complete(task_id)
    except OrchestratorError as e:
        return error_to_response(e)
    return TaskResponse.from_task(task)


# ===============================================================================
# Item Endpoints
# ===============================================================================


@router.get("/items", response_model=ItemListResponse)
async def list_items() -> ItemListResponse:
    orchestrator = get_orchestrator()
    items = [ItemResponse.from_item(i) for i in orchestrator.items()]
    return ItemListResponse(items=items, total=len(items))


@router.delete("/items")
async def clear_items() -> Any:
    orchestrator = get_orchestrator()
    try:
        cleared = await orchestrator.clear_items()
    except OrchestratorError as e:
        return error_to_response(e)
    return {"cleared": cleared}


@router.post("/refresh", response_model=DebugStateResponse)
async def force_refresh() -> Any:
    """Re-read the ledger and prune items that no longer belong to the account."""
    orchestrator = get_orchestrator()
    try:
        state = await orchestrator.force_refresh()
    except OrchestratorError as e:
        return error_to_response(e)
    return DebugStateResponse(state=state)


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(limit: int = Query(50, ge=1, le=200)) -> Any:
    orchestrator = get_orchestrator()
    return [
        NotificationResponse.from_notification(n)
        for n in orchestrator.notifications.recent(limit)
    ]


@router.get("/fees/{mode}", response_model=FeeResponse)
async def get_fee(mode: Mode) -> Any:
    orchestrator = get_orchestrator()
    try:
        fee = await orchestrator.ledger.get_generation_fee(mode)
    except LedgerError as e:
        return error_to_response(e)
    return FeeResponse(
        mode=mode,
        fee_wei=fee,
        fee_ether=str(Decimal(fee) / Decimal(WEI_PER_ETHER)),
    )


# ===============================================================================
# Debug Endpoints
# ===============================================================================


@router.get("/debug/state", response_model=DebugStateResponse)
async def debug_state() -> DebugStateResponse:
    """Diagnostics snapshot: phases, pending set, buffered results, cache health."""
    orchestrator = get_orchestrator()
    return DebugStateResponse(state=orchestrator.debug_state())
