"""Pydantic schemas for API v1 - Simple DTOs only."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from beatstudio.tasks.models import (
    ChainStatus,
    GeneratedItem,
    GenerationTask,
    Mode,
    Notification,
    NotificationKind,
    ServiceStatus,
    TaskPhase,
)


class ErrorDetail(BaseModel):
    """Error information."""

    code: str
    message: str
    field: str | None = None


class ErrorResponse(BaseModel):
    """Standardized error body."""

    error: ErrorDetail
    task_id: str | None = None


class SessionRequest(BaseModel):
    """Connect or switch account."""

    user_id: str = Field(min_length=1, description="Wallet address of the account")


class SessionResponse(BaseModel):
    user_id: str | None
    items: int
    pending_tasks: int


class TaskResponse(BaseModel):
    """Task state."""

    task_id: str | None
    attempt_id: str
    phase: TaskPhase
    chain_status: ChainStatus
    service_status: ServiceStatus
    transaction_hash: str | None = None
    created_at: datetime
    updated_at: datetime
    last_checked_at: datetime | None = None
    failure_reason: str | None = None
    failure_message: str | None = None
    manually_completed: bool = False

    @classmethod
    def from_task(cls, task: GenerationTask) -> "TaskResponse":
        data = task.to_dict()
        data.pop("params")
        data.pop("user_id")
        return cls(**data)


class TaskListResponse(BaseModel):
    tasks: list[TaskResponse]
    pending: list[str]


class ItemResponse(BaseModel):
    """Generated item."""

    item_id: str
    task_id: str
    version: str
    title: str
    media_url: str
    image_url: str
    duration_seconds: int
    tags: list[str]
    created_at: datetime
    artifact_address: str | None = None
    artifact_degraded: bool = False

    @classmethod
    def from_item(cls, item: GeneratedItem) -> "ItemResponse":
        return cls(**item.model_dump(exclude={"prompt", "model_name"}))


class ItemListResponse(BaseModel):
    items: list[ItemResponse]
    total: int


class NotificationResponse(BaseModel):
    task_id: str
    kind: NotificationKind
    message: str
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationResponse":
        return cls(**notification.to_dict())


class CallbackAck(BaseModel):
    success: bool = True
    message: str
    task_id: str


class FeeResponse(BaseModel):
    mode: Mode
    fee_wei: int
    fee_ether: str


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime = Field(default_factory=datetime.now)
    session_active: bool
    pending_tasks: int
    dependencies: dict[str, str] = {}


class DebugStateResponse(BaseModel):
    state: dict[str, Any]
