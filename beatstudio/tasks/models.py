"""Task and item domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from beatstudio.errors import InvalidTransitionError

PLACEHOLDER_ITEM_PREFIX = "pending-"


class Mode(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"


class ChainStatus(str, Enum):
    UNSENT = "unsent"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ServiceStatus(str, Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"


class TaskPhase(str, Enum):
    """Orchestrator lifecycle phase of a generation task."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_CHAIN_CONFIRMATION = "awaiting_chain_confirmation"
    AWAITING_SERVICE_COMPLETION = "awaiting_service_completion"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    GENERATION_SERVICE_ERROR = "generation_service_error"
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    TRANSACTION_REVERTED = "transaction_reverted"
    SERVICE_REPORTED_FAILURE = "service_reported_failure"


class NotificationKind(str, Enum):
    COMPLETION = "completion"
    FAILURE = "failure"
    EMPTY_RESULT = "empty_result"


TERMINAL_PHASES = frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED})

_ALLOWED_TRANSITIONS: dict[TaskPhase, frozenset[TaskPhase]] = {
    TaskPhase.IDLE: frozenset({TaskPhase.SUBMITTING, TaskPhase.FAILED}),
    TaskPhase.SUBMITTING: frozenset(
        {TaskPhase.AWAITING_CHAIN_CONFIRMATION, TaskPhase.FAILED}
    ),
    TaskPhase.AWAITING_CHAIN_CONFIRMATION: frozenset(
        {TaskPhase.AWAITING_SERVICE_COMPLETION, TaskPhase.FAILED}
    ),
    TaskPhase.AWAITING_SERVICE_COMPLETION: frozenset(
        {TaskPhase.COMPLETED, TaskPhase.FAILED}
    ),
    TaskPhase.COMPLETED: frozenset(),
    TaskPhase.FAILED: frozenset(),
}

_CHAIN_ORDER = [ChainStatus.UNSENT, ChainStatus.BROADCAST, ChainStatus.CONFIRMED]


class RequestParams(BaseModel):
    """User request for a generation. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    prompt: str = Field(min_length=1, max_length=3000)
    style: str = ""
    instrumental: bool = False
    mode: Mode = Mode.SIMPLE
    title: str | None = None
    vocal_gender: str | None = None  # "m" / "f" hint, advanced mode only
    negative_tags: str | None = None


@dataclass
class GenerationTask:
    """
    One user-initiated generation request.

    Attributes:
        attempt_id: Local identifier assigned before the service issues a task id
        user_id: Account the task was submitted from
        params: Request parameters
        task_id: Identifier issued by the generation service
        transaction_hash: Ledger transaction that paid for the task
        chain_status: Ledger-side progress
        service_status: Last status observed from the generation service
        phase: Orchestrator lifecycle phase
        last_checked_at: Last status poll, drives back-off
        failure_reason: Typed reason once the task has failed
        failure_message: Human-readable failure detail
        manually_completed: Completed through the manual override
    """

    attempt_id: str
    user_id: str
    params: RequestParams | None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    task_id: str | None = None
    transaction_hash: str | None = None
    chain_status: ChainStatus = ChainStatus.UNSENT
    service_status: ServiceStatus = ServiceStatus.UNKNOWN
    phase: TaskPhase = TaskPhase.IDLE
    last_checked_at: datetime | None = None
    failure_reason: FailureReason | None = None
    failure_message: str | None = None
    manually_completed: bool = False

    @classmethod
    def from_ledger(cls, task_id: str, user_id: str) -> "GenerationTask":
        """Rebuild a task known only through the ledger read model."""
        return cls(
            attempt_id=f"ledger-{task_id}",
            user_id=user_id,
            params=None,
            task_id=task_id,
            chain_status=ChainStatus.CONFIRMED,
            phase=TaskPhase.AWAITING_SERVICE_COMPLETION,
        )

    @property
    def key(self) -> str:
        """Registry key: the service task id, or the attempt id before one exists."""
        return self.task_id or self.attempt_id

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def awaiting_service(self) -> bool:
        return self.phase == TaskPhase.AWAITING_SERVICE_COMPLETION

    def transition(self, target: TaskPhase) -> None:
        """
        Move to a new lifecycle phase.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current phase
        """
        if target not in _ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Task {self.key} cannot move from {self.phase.value} to {target.value}",
                task=self,
            )
        self.phase = target
        self.updated_at = datetime.now()

    def advance_chain(self, status: ChainStatus) -> None:
        """Advance chain status strictly in order (Unsent, Broadcast, Confirmed)."""
        if status == ChainStatus.FAILED:
            if self.chain_status == ChainStatus.CONFIRMED:
                raise InvalidTransitionError(
                    f"Task {self.key} is already confirmed on chain", task=self
                )
            self.chain_status = status
            return
        if (
            self.chain_status == ChainStatus.FAILED
            or _CHAIN_ORDER.index(status) != _CHAIN_ORDER.index(self.chain_status) + 1
        ):
            raise InvalidTransitionError(
                f"Task {self.key} chain status cannot move from "
                f"{self.chain_status.value} to {status.value}",
                task=self,
            )
        self.chain_status = status

    def set_transaction_hash(self, tx_hash: str) -> None:
        if self.transaction_hash is not None and self.transaction_hash != tx_hash:
            raise InvalidTransitionError(
                f"Task {self.key} already has transaction {self.transaction_hash}",
                task=self,
            )
        self.transaction_hash = tx_hash

    def fail(self, reason: FailureReason, message: str) -> None:
        self.transition(TaskPhase.FAILED)
        self.failure_reason = reason
        self.failure_message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "task_id": self.task_id,
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "params": self.params.model_dump() if self.params else None,
            "transaction_hash": self.transaction_hash,
            "chain_status": self.chain_status.value,
            "service_status": self.service_status.value,
            "phase": self.phase.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_checked_at": self.last_checked_at,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_message": self.failure_message,
            "manually_completed": self.manually_completed,
        }


class GeneratedItem(BaseModel):
    """One finished artifact. Unique by item_id; siblings share a task_id."""

    item_id: str
    task_id: str
    version: str  # "v1", "v2", ... within the task
    title: str
    media_url: str
    image_url: str = ""
    duration_seconds: int = Field(default=0, ge=0)
    tags: set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=datetime.now)
    prompt: str = ""
    model_name: str | None = None
    artifact_address: str | None = None
    artifact_degraded: bool = False

    @field_serializer("tags")
    def _serialize_tags(self, tags: set[str]) -> list[str]:
        return sorted(tags)

    @property
    def is_complete(self) -> bool:
        """Fully formed items are the only ones persisted."""
        return bool(
            self.item_id
            and not self.item_id.startswith(PLACEHOLDER_ITEM_PREFIX)
            and self.media_url
            and self.title
        )

    def with_artifact(self, address: str, degraded: bool = False) -> "GeneratedItem":
        return self.model_copy(
            update={"artifact_address": address, "artifact_degraded": degraded}
        )


@dataclass
class Notification:
    """User-visible notification that passed the dedup gate."""

    task_id: str
    kind: NotificationKind
    message: str
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "message": self.message,
            "created_at": self.created_at,
        }
