"""Exception taxonomy for the generation orchestrator.

Terminal errors propagate to the caller and fail the task they belong to.
Transient errors are absorbed by the layer that raised them.
"""

from typing import Any


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""

    code = "orchestrator_error"
    terminal = True

    def __init__(
        self,
        message: str,
        task: Any = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.task = task
        self.context = context or {}


class SessionUnavailableError(OrchestratorError):
    """No wallet/account session is connected."""

    code = "session_unavailable"


class TaskNotFoundError(OrchestratorError):
    """Task id is not tracked by the current session."""

    code = "task_not_found"


class InvalidTransitionError(OrchestratorError):
    """A state change was attempted out of order or from a terminal state."""

    code = "invalid_transition"


# Generation service


class GenerationServiceError(OrchestratorError):
    """The generation service did not accept the request."""

    code = "generation_service_error"


class ServiceUnavailableError(GenerationServiceError):
    code = "service_unavailable"


class InvalidRequestError(GenerationServiceError):
    code = "invalid_request"


class PollTransientError(OrchestratorError):
    """A status poll failed for infrastructure reasons; retried later."""

    code = "poll_transient_error"
    terminal = False


class ServiceReportedFailure(OrchestratorError):
    """The generation service explicitly reported the task as failed."""

    code = "service_reported_failure"


# Ledger


class LedgerError(OrchestratorError):
    """Ledger gateway failure at the broadcast or confirmation step."""

    code = "ledger_error"


class UserRejectedError(LedgerError):
    code = "user_rejected"


class InsufficientBalanceError(LedgerError):
    code = "insufficient_balance"


class ChainUnavailableError(LedgerError):
    code = "chain_unavailable"


class TransactionRevertedError(LedgerError):
    code = "transaction_reverted"


class ConfirmationTimeoutError(LedgerError):
    """No receipt within the wait budget; the transaction may still land."""

    code = "confirmation_timeout"
    terminal = False


# Storage / cache


class StorageUploadError(OrchestratorError):
    code = "storage_upload_error"
    terminal = False


class CacheUnavailableError(OrchestratorError):
    code = "cache_unavailable"
    terminal = False
