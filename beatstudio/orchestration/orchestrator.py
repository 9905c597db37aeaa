"""
Generation orchestrator.

Owns the task lifecycle from submission to materialized items:

    Idle -> Submitting -> AwaitingChainConfirmation
         -> AwaitingServiceCompletion -> Completed
    (Failed is reachable from every non-terminal phase)

Completion can be observed by a status poll or a push callback. Both paths
end in ``_apply_report``, which holds a per-task lock and checks the
``_materialized`` set before producing any side effect. Whichever signal
arrives first materializes the items; the other is a no-op.
"""

import asyncio
import contextlib
from datetime import datetime
from typing import Any
import uuid

import structlog

from beatstudio.clients.generation import (
    GenerationServiceClient,
    ServiceStatusReport,
    normalize_status_payload,
)
from beatstudio.clients.ledger import HttpLedgerClient, LedgerClient
from beatstudio.clients.storage import (
    ArtifactMetadata,
    ArtifactStorageClient,
    UploadResult,
    placeholder_address,
)
from beatstudio.config import Settings
from beatstudio.core.item_cache import FileCacheBackend, ItemCacheStore
from beatstudio.core.notifications import NotificationFeed
from beatstudio.errors import (
    ChainUnavailableError,
    ConfirmationTimeoutError,
    GenerationServiceError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerError,
    PollTransientError,
    ServiceReportedFailure,
    SessionUnavailableError,
    TaskNotFoundError,
    TransactionRevertedError,
    UserRejectedError,
)
from beatstudio.orchestration.reconciliation import ReconciliationLoop, pending_tasks
from beatstudio.tasks.models import (
    ChainStatus,
    FailureReason,
    GeneratedItem,
    GenerationTask,
    NotificationKind,
    RequestParams,
    ServiceStatus,
    TaskPhase,
)

logger = structlog.get_logger(__name__)

_LEDGER_FAILURE_REASONS: dict[type[LedgerError], FailureReason] = {
    UserRejectedError: FailureReason.USER_REJECTED,
    InsufficientBalanceError: FailureReason.INSUFFICIENT_BALANCE,
    ChainUnavailableError: FailureReason.CHAIN_UNAVAILABLE,
    TransactionRevertedError: FailureReason.TRANSACTION_REVERTED,
}

MAX_EARLY_RESULTS = 256


class GenerationOrchestrator:
    """
    Reconciles the generation service, the ledger and artifact storage into
    one view of the connected account's tasks and items.

    Example:
        >>> orchestrator = GenerationOrchestrator(service, ledger, storage, cache)
        >>> await orchestrator.connect("0xabc")
        >>> task = await orchestrator.submit(RequestParams(prompt="lofi beat"))
        >>> orchestrator.items()
    """

    def __init__(
        self,
        service: GenerationServiceClient,
        ledger: LedgerClient,
        storage: ArtifactStorageClient,
        cache: ItemCacheStore,
        notifications: NotificationFeed | None = None,
        poll_interval_seconds: float = 5.0,
        poll_max_backoff_seconds: float = 60.0,
        max_concurrent_polls: int = 4,
        poll_rate_limit_per_second: int = 5,
        ledger_refresh_interval_seconds: float = 30.0,
        upload_timeout_seconds: float = 20.0,
        autostart: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            service: Generation service client
            ledger: Ledger client
            storage: Artifact storage client
            cache: Per-user item cache
            notifications: Dedup-gated notification feed
            poll_interval_seconds: Status poll interval per pending task
            poll_max_backoff_seconds: Back-off cap after poll failures
            max_concurrent_polls: Maximum status polls in flight
            poll_rate_limit_per_second: Maximum status polls started per second
            ledger_refresh_interval_seconds: Interval between ledger refreshes
            upload_timeout_seconds: Upper bound on one artifact upload
            autostart: Start the polling and refresh tasks on connect
        """
        self.service = service
        self.ledger = ledger
        self.storage = storage
        self.cache = cache
        self.notifications = notifications or NotificationFeed()
        self.dedup = self.notifications.dedup
        self.ledger_refresh_interval = ledger_refresh_interval_seconds
        self.upload_timeout = upload_timeout_seconds
        self.autostart = autostart

        self.loop = ReconciliationLoop(
            poll=self.poll_task,
            pending=self.pending_set,
            interval_seconds=poll_interval_seconds,
            max_backoff_seconds=poll_max_backoff_seconds,
            max_concurrent=max_concurrent_polls,
            rate_limit_per_second=poll_rate_limit_per_second,
        )

        self._user_id: str | None = None
        self._epoch = 0
        self._session_lock = asyncio.Lock()
        self._tasks: dict[str, GenerationTask] = {}
        self._items: dict[str, GeneratedItem] = {}  # item_id -> item
        self._locally_tracked: set[str] = set()
        self._materialized: set[str] = set()
        self._cleared: set[str] = set()
        self._task_locks: dict[str, asyncio.Lock] = {}
        self._early_results: dict[str, ServiceStatusReport] = {}
        self._ledger_all: list[str] | None = None
        self._ledger_completed: list[str] | None = None
        self._ledger_refreshed_at: datetime | None = None
        self._background: set[asyncio.Task] = set()
        self._refresh_runner: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def _require_session(self) -> str:
        if self._user_id is None:
            raise SessionUnavailableError("No account connected")
        return self._user_id

    async def connect(self, user_id: str) -> None:
        """
        Start a session for ``user_id``, switching accounts if another is active.

        Hydrates items from the user's cache entry when it is fresh, then
        reconciles against the ledger read model.
        """
        async with self._session_lock:
            if self._user_id == user_id:
                return
            if self._user_id is not None:
                logger.info("Switching account", previous=self._user_id, user_id=user_id)
                await self._reset_session()

            self._user_id = user_id
            epoch = self._epoch
            cached = await self.cache.load(user_id)
            if epoch != self._epoch:
                return
            self._hydrate(user_id, cached)
            logger.info("Session started", user_id=user_id, cached_items=len(cached))

        try:
            await self.refresh_ledger()
        except LedgerError as e:
            logger.warning(
                "Initial ledger refresh failed, continuing from cache",
                user_id=user_id,
                error_type=e.code,
                error=e.message,
            )

        if self.autostart and epoch == self._epoch:
            self.loop.start()
            self._start_refresh_runner()

    async def disconnect(self) -> None:
        """End the session; stops polling and drops all in-memory state."""
        async with self._session_lock:
            if self._user_id is None:
                return
            user_id = self._user_id
            await self._reset_session()
            logger.info("Session ended", user_id=user_id)

    async def switch_account(self, user_id: str) -> None:
        await self.connect(user_id)

    def _hydrate(self, user_id: str, cached: list[GeneratedItem]) -> None:
        for item in cached:
            self._items.setdefault(item.item_id, item)
        for task_id in {item.task_id for item in cached}:
            task = GenerationTask.from_ledger(task_id, user_id)
            task.service_status = ServiceStatus.SUCCESS
            task.transition(TaskPhase.COMPLETED)
            self._tasks[task_id] = task
            self._materialized.add(task_id)

    async def _reset_session(self) -> None:
        self._epoch += 1
        await self.loop.stop()
        await self._stop_refresh_runner()
        background = list(self._background)
        for task in background:
            task.cancel()
        for task in background:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()

        self._user_id = None
        self._tasks.clear()
        self._items.clear()
        self._locally_tracked.clear()
        self._materialized.clear()
        self._cleared.clear()
        self._task_locks.clear()
        self._early_results.clear()
        self._ledger_all = None
        self._ledger_completed = None
        self._ledger_refreshed_at = None
        self.notifications.clear()

    async def shutdown(self) -> None:
        async with self._session_lock:
            await self._reset_session()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, params: RequestParams) -> GenerationTask:
        """
        Submit a generation request and pay for it on the ledger.

        Returns once the payment transaction is broadcast. Chain confirmation
        is awaited in the background.

        Raises:
            SessionUnavailableError: No account connected
            GenerationServiceError: The service rejected the request (no charge)
            LedgerError: The payment could not be broadcast
        """
        user_id = self._require_session()
        epoch = self._epoch
        task = GenerationTask(
            attempt_id=f"attempt-{uuid.uuid4().hex[:12]}", user_id=user_id, params=params
        )
        self._tasks[task.key] = task

        logger.info(
            "Submitting generation request",
            attempt_id=task.attempt_id,
            user_id=user_id,
            mode=params.mode.value,
        )

        try:
            task_id = await self.service.submit(params)
        except GenerationServiceError as e:
            task.fail(FailureReason.GENERATION_SERVICE_ERROR, e.message)
            self._report_failure(task, f"Generation request failed: {e.message}", e.code)
            e.task = task
            raise

        if epoch != self._epoch:
            raise SessionUnavailableError("Account changed during submission", task=task)

        self._tasks.pop(task.attempt_id, None)
        task.task_id = task_id
        task.transition(TaskPhase.SUBMITTING)
        self._tasks[task_id] = task

        try:
            fee = await self.ledger.get_generation_fee(params.mode)
            tx_hash = await self.ledger.broadcast_generation_request(
                user_id, task_id, params, fee
            )
        except LedgerError as e:
            self._fail_on_chain(task, e)
            e.task = task
            raise

        task.set_transaction_hash(tx_hash)
        task.advance_chain(ChainStatus.BROADCAST)
        task.transition(TaskPhase.AWAITING_CHAIN_CONFIRMATION)
        logger.info("Awaiting chain confirmation", task_id=task_id, tx_hash=tx_hash)

        self._spawn(self._await_confirmation(task, epoch))
        return task

    async def _await_confirmation(self, task: GenerationTask, epoch: int) -> None:
        try:
            receipt = await self.ledger.wait_for_receipt(task.transaction_hash)
        except (ConfirmationTimeoutError, ChainUnavailableError) as e:
            if epoch == self._epoch:
                logger.warning(
                    "Confirmation not observed, waiting for ledger read model",
                    task_id=task.task_id,
                    tx_hash=task.transaction_hash,
                    error_type=e.code,
                    error=e.message,
                )
            return
        except LedgerError as e:
            receipt_error: LedgerError | None = e
        else:
            receipt_error = None
            if not receipt.success:
                receipt_error = TransactionRevertedError(
                    "Payment transaction failed on chain",
                    context={"tx_hash": task.transaction_hash},
                )

        if epoch != self._epoch:
            return

        if receipt_error is not None:
            async with self._lock_for(task.key):
                if task.phase != TaskPhase.AWAITING_CHAIN_CONFIRMATION:
                    return
                self._fail_on_chain(task, receipt_error)
            return

        await self._confirm(task)

    def _fail_on_chain(self, task: GenerationTask, error: LedgerError) -> None:
        reason = _LEDGER_FAILURE_REASONS.get(type(error), FailureReason.CHAIN_UNAVAILABLE)
        task.advance_chain(ChainStatus.FAILED)
        task.fail(reason, error.message)
        self._report_failure(task, f"Payment failed: {error.message}", error.code)

    async def _confirm(self, task: GenerationTask) -> None:
        """Move a broadcast task to AwaitingServiceCompletion and start tracking it."""
        task_id = task.key
        async with self._lock_for(task_id):
            if task.phase != TaskPhase.AWAITING_CHAIN_CONFIRMATION:
                return
            task.advance_chain(ChainStatus.CONFIRMED)
            task.transition(TaskPhase.AWAITING_SERVICE_COMPLETION)
            self._locally_tracked.add(task_id)

        logger.info("Chain confirmation observed", task_id=task_id, tx_hash=task.transaction_hash)

        early = self._early_results.pop(task_id, None)
        if early is not None:
            logger.info("Applying buffered result", task_id=task_id, status=early.status.value)
            await self._apply_report(task, early, source="callback")

        self.loop.wake()

    # ------------------------------------------------------------------
    # Completion signals
    # ------------------------------------------------------------------

    async def handle_callback(self, payload: Any) -> ServiceStatusReport:
        """
        Ingest a push callback from the generation service.

        Raises:
            ValueError: If the payload cannot be normalized
        """
        report = normalize_status_payload(payload)
        logger.info(
            "Callback received",
            task_id=report.task_id,
            status=report.status.value,
            tracks=len(report.tracks),
        )
        await self.ingest_report(report, source="callback")
        return report

    async def ingest_report(self, report: ServiceStatusReport, source: str) -> bool:
        """
        Route a status report to its task.

        Reports for tasks that have not reached AwaitingServiceCompletion are
        buffered and applied on confirmation.

        Returns:
            True if this report completed the task
        """
        if self._user_id is None:
            logger.warning("Status report ignored, no active session", task_id=report.task_id)
            return False

        task_id = report.task_id
        if task_id in self._cleared:
            return False

        task = self._tasks.get(task_id)
        if task is None and self._known_to_ledger(task_id):
            task = self._adopt(task_id)

        if task is None or task.phase in (
            TaskPhase.IDLE,
            TaskPhase.SUBMITTING,
            TaskPhase.AWAITING_CHAIN_CONFIRMATION,
        ):
            self._buffer_early(report)
            return False

        return await self._apply_report(task, report, source)

    def _buffer_early(self, report: ServiceStatusReport) -> None:
        if report.status not in (ServiceStatus.SUCCESS, ServiceStatus.FAILED):
            return
        existing = self._early_results.get(report.task_id)
        if existing is not None and existing.status == ServiceStatus.SUCCESS:
            return
        self._early_results[report.task_id] = report
        while len(self._early_results) > MAX_EARLY_RESULTS:
            self._early_results.pop(next(iter(self._early_results)))
        logger.info("Buffered result for unconfirmed task", task_id=report.task_id)

    async def _apply_report(
        self, task: GenerationTask, report: ServiceStatusReport, source: str
    ) -> bool:
        task_id = task.key
        async with self._lock_for(task_id):
            if self._tasks.get(task_id) is not task:
                return False

            if task.phase == TaskPhase.FAILED:
                logger.debug(
                    "Report for failed task ignored",
                    task_id=task_id,
                    status=report.status.value,
                )
                return False

            if report.status == ServiceStatus.SUCCESS:
                return await self._apply_success(task, report, source)

            if report.status == ServiceStatus.FAILED:
                if task.is_terminal:
                    logger.debug("Failure report for completed task ignored", task_id=task_id)
                    return False
                task.service_status = ServiceStatus.FAILED
                message = report.error_message or "Generation failed"
                task.fail(FailureReason.SERVICE_REPORTED_FAILURE, message)
                self._locally_tracked.discard(task_id)
                self._report_failure(
                    task, f"Generation failed: {message}", ServiceReportedFailure.code
                )
                return False

            if not task.is_terminal:
                task.service_status = (
                    ServiceStatus.PENDING
                    if report.status == ServiceStatus.UNKNOWN
                    else report.status
                )
            return False

    async def _apply_success(
        self, task: GenerationTask, report: ServiceStatusReport, source: str
    ) -> bool:
        # Caller holds the task lock.
        task_id = task.key
        items = report.to_items()
        if not items:
            logger.warning(
                "Completion payload without items, still waiting",
                task_id=task_id,
                source=source,
            )
            self.notifications.notify(
                task_id,
                NotificationKind.EMPTY_RESULT,
                "Generation reported done but no tracks were returned yet",
            )
            return False

        if task_id in self._materialized:
            new_items = [i for i in items if i.item_id not in self._items]
            if not new_items:
                logger.debug("Duplicate completion ignored", task_id=task_id, source=source)
                return False
            await self._store_items(task, new_items)
            return False

        self._materialized.add(task_id)
        task.service_status = ServiceStatus.SUCCESS
        if task.phase == TaskPhase.AWAITING_SERVICE_COMPLETION:
            task.transition(TaskPhase.COMPLETED)

        stored = await self._store_items(task, items)
        if self._tasks.get(task_id) is not task:
            return False
        logger.info(
            "Task completed",
            task_id=task_id,
            source=source,
            items=stored,
            manually_completed=task.manually_completed,
        )
        self.notifications.notify(
            task_id,
            NotificationKind.COMPLETION,
            f"Generation complete: {len(items)} track(s) ready",
        )
        return True

    async def _store_items(self, task: GenerationTask, items: list[GeneratedItem]) -> int:
        uploaded = await asyncio.gather(*(self._upload_artifact(task, item) for item in items))
        if self._tasks.get(task.key) is not task:
            return 0
        added = 0
        for item in uploaded:
            if item.item_id not in self._items:
                self._items[item.item_id] = item
                added += 1
        await self._persist()
        return added

    async def _upload_artifact(self, task: GenerationTask, item: GeneratedItem) -> GeneratedItem:
        metadata = ArtifactMetadata.for_item(
            item, task.params, task.transaction_hash, task.user_id
        )
        try:
            result = await asyncio.wait_for(
                self.storage.upload(metadata), timeout=self.upload_timeout
            )
        except Exception as e:
            result = UploadResult(address=placeholder_address(metadata), degraded=True)
            logger.error(
                "Artifact upload did not finish, using placeholder address",
                error_type="StorageUploadError",
                error=str(e) or type(e).__name__,
                task_id=task.key,
                item_id=item.item_id,
                placeholder=result.address,
            )
        return item.with_artifact(result.address, result.degraded)

    async def poll_task(self, task_id: str) -> ServiceStatusReport:
        """
        Query the service for one task and apply the result.

        Raises:
            SessionUnavailableError: No account connected
            TaskNotFoundError: Task unknown locally and on the ledger
            PollTransientError: The query failed or the service answered
                with an error envelope
        """
        self._require_session()
        epoch = self._epoch
        task = self._tasks.get(task_id)
        if task is None:
            if task_id in self._cleared or not self._known_to_ledger(task_id):
                raise TaskNotFoundError(f"Task {task_id} not found")
            task = self._adopt(task_id)

        task.last_checked_at = datetime.now()
        report = await self.service.poll_status(task_id)
        if epoch != self._epoch:
            return report

        await self.ingest_report(report, source="poll")

        if report.status == ServiceStatus.ERROR:
            raise PollTransientError(
                report.error_message or "Service answered with an error",
                context={"task_id": task_id},
            )
        return report

    async def check_task(self, task_id: str) -> GenerationTask:
        """Immediate poll for one task, used when a callback may have been missed."""
        await self.poll_task(task_id)
        return self.get_task(task_id)

    async def force_complete(self, task_id: str) -> GenerationTask:
        """
        Manual override: mark a stuck task complete without a service result.

        Intended for a user who verified the payment transaction on a block
        explorer while the service never reported success. It does not touch
        the materialization guard, so items still land if the service later
        returns them. A forced poll is queued right away for that purpose.

        Raises:
            TaskNotFoundError: Unknown task
            InvalidTransitionError: Task already failed or its payment is not
                confirmed on chain yet
        """
        self._require_session()
        task = self.get_task(task_id)

        async with self._lock_for(task.key):
            if task.phase == TaskPhase.COMPLETED:
                return task
            # Chain status only moves on a receipt or the ledger read model.
            if task.phase != TaskPhase.AWAITING_SERVICE_COMPLETION:
                raise InvalidTransitionError(
                    f"Task {task.key} cannot be force-completed from {task.phase.value}",
                    task=task,
                )
            task.transition(TaskPhase.COMPLETED)
            task.manually_completed = True

        logger.warning(
            "Task manually marked complete without a service result",
            task_id=task.key,
            tx_hash=task.transaction_hash,
        )
        self.notifications.notify(
            task.key, NotificationKind.COMPLETION, "Generation marked complete manually"
        )
        if task.task_id:
            self.loop.force_poll(task.task_id)
        return task

    # ------------------------------------------------------------------
    # Ledger reconciliation
    # ------------------------------------------------------------------

    def _known_to_ledger(self, task_id: str) -> bool:
        return task_id in (self._ledger_all or []) or task_id in (self._ledger_completed or [])

    def _adopt(self, task_id: str) -> GenerationTask:
        """Track a task known only through the ledger (e.g. after a reload)."""
        task = GenerationTask.from_ledger(task_id, self._require_session())
        self._tasks[task_id] = task
        logger.info("Adopted task from ledger", task_id=task_id)
        return task

    def pending_set(self) -> set[str]:
        """Tasks still awaiting a service result."""
        resolved = set(self._ledger_completed or []) | {
            task_id for task_id, task in self._tasks.items() if task.is_terminal
        }
        return pending_tasks(self._ledger_all or [], resolved | self._cleared, self._locally_tracked)

    async def refresh_ledger(self) -> None:
        """
        Re-read the ledger read model, promote and adopt tasks, then sweep.

        Raises:
            SessionUnavailableError: No account connected
            LedgerError: The read model could not be fetched
        """
        user_id = self._require_session()
        epoch = self._epoch
        all_ids, completed_ids = await asyncio.gather(
            self.ledger.get_all_task_ids(user_id),
            self.ledger.get_completed_task_ids(user_id),
        )
        if epoch != self._epoch:
            return

        self._ledger_all = list(all_ids)
        self._ledger_completed = list(completed_ids)
        self._ledger_refreshed_at = datetime.now()
        all_set = set(all_ids)
        completed_set = set(completed_ids)

        # The read model now reflects these; local tracking is no longer needed.
        self._locally_tracked -= all_set

        for task_id in sorted(all_set | completed_set):
            if task_id in self._cleared:
                continue
            task = self._tasks.get(task_id)
            if task is None:
                task = self._adopt(task_id)
            elif task.phase == TaskPhase.AWAITING_CHAIN_CONFIRMATION:
                await self._confirm(task)

        for task_id in completed_set - self._materialized - self._cleared:
            task = self._tasks.get(task_id)
            if task is not None and task.phase == TaskPhase.FAILED:
                continue
            self.loop.force_poll(task_id)

        logger.info(
            "Ledger read model refreshed",
            user_id=user_id,
            all_tasks=len(all_set),
            completed_tasks=len(completed_set),
            pending=len(self.pending_set()),
        )
        await self.sweep()
        self.loop.wake()

    async def force_refresh(self) -> dict[str, Any]:
        await self.refresh_ledger()
        return self.debug_state()

    async def sweep(self) -> int:
        """
        Prune items whose task is neither on the ledger nor locally tracked.

        Skipped until the ledger has been read at least once.

        Returns:
            Number of items pruned
        """
        if self._ledger_all is None:
            logger.debug("Sweep skipped, ledger not read yet")
            return 0

        valid = set(self._ledger_all) | set(self._ledger_completed or []) | self._locally_tracked
        stale = [item for item in self._items.values() if item.task_id not in valid]
        if not stale:
            return 0

        for item in stale:
            del self._items[item.item_id]
        stale_tasks = {item.task_id for item in stale}
        self._materialized -= stale_tasks
        for task_id in stale_tasks:
            task = self._tasks.get(task_id)
            if task is not None and task.is_terminal:
                del self._tasks[task_id]

        logger.info(
            "Pruned items not on ledger",
            pruned=len(stale),
            tasks=sorted(stale_tasks),
            remaining=len(self._items),
        )
        await self._persist()
        return len(stale)

    def _start_refresh_runner(self) -> None:
        if self._refresh_runner is None or self._refresh_runner.done():
            self._refresh_runner = asyncio.create_task(self._refresh_periodically())

    async def _stop_refresh_runner(self) -> None:
        runner, self._refresh_runner = self._refresh_runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner

    async def _refresh_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.ledger_refresh_interval)
            try:
                await self.refresh_ledger()
            except (LedgerError, SessionUnavailableError) as e:
                logger.warning("Periodic ledger refresh failed", error_type=e.code, error=e.message)

    # ------------------------------------------------------------------
    # Items and state
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        if self._user_id is None:
            return
        if self._items:
            await self.cache.save(self._user_id, list(self._items.values()))
        else:
            await self.cache.discard(self._user_id)

    async def clear_items(self) -> int:
        """Explicit user clear: drop items, finished tasks and the cache entry."""
        user_id = self._require_session()
        count = len(self._items)
        cleared_tasks = {item.task_id for item in self._items.values()} | {
            task_id for task_id, task in self._tasks.items() if task.is_terminal
        }
        self._items.clear()
        for task_id in cleared_tasks:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                self._tasks.pop(task_id, None)
                self._cleared.add(task_id)
        self._materialized -= cleared_tasks
        await self.cache.discard(user_id)
        logger.info("Items cleared", user_id=user_id, items=count, tasks=len(cleared_tasks))
        return count

    def items(self) -> list[GeneratedItem]:
        return list(self._items.values())

    def tasks(self) -> list[GenerationTask]:
        return sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)

    def get_task(self, task_id: str) -> GenerationTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        return self._task_locks.setdefault(task_id, asyncio.Lock())

    def _report_failure(self, task: GenerationTask, message: str, error_type: str) -> None:
        logger.error(
            "Task failed",
            task_id=task.key,
            reason=task.failure_reason.value if task.failure_reason else None,
            error_type=error_type,
            error=message,
        )
        self.notifications.notify(task.key, NotificationKind.FAILURE, message)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task crashed", error=str(exc), error_type=type(exc).__name__)

    async def drain(self) -> None:
        """Wait for background confirmation watchers to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def debug_state(self) -> dict[str, Any]:
        """Diagnostics snapshot of the session."""
        phases: dict[str, int] = {}
        for task in self._tasks.values():
            phases[task.phase.value] = phases.get(task.phase.value, 0) + 1
        items_per_task: dict[str, int] = {}
        for item in self._items.values():
            items_per_task[item.task_id] = items_per_task.get(item.task_id, 0) + 1

        return {
            "user_id": self._user_id,
            "session_epoch": self._epoch,
            "tasks_by_phase": phases,
            "items": len(self._items),
            "items_per_task": items_per_task,
            "degraded_artifacts": sum(1 for i in self._items.values() if i.artifact_degraded),
            "pending": sorted(self.pending_set()),
            "locally_tracked": sorted(self._locally_tracked),
            "materialized": sorted(self._materialized),
            "buffered_results": sorted(self._early_results),
            "ledger_all_tasks": len(self._ledger_all) if self._ledger_all is not None else None,
            "ledger_completed_tasks": (
                len(self._ledger_completed) if self._ledger_completed is not None else None
            ),
            "ledger_refreshed_at": (
                self._ledger_refreshed_at.isoformat() if self._ledger_refreshed_at else None
            ),
            "notifications_recorded": len(self.dedup),
            "reconciliation": self.loop.stats(),
            "cache": self.cache.health_check(),
        }


# Global orchestrator instance (initialized once at startup)
_orchestrator: GenerationOrchestrator | None = None


def get_orchestrator() -> GenerationOrchestrator:
    """
    Get the global orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator is not initialized
    """
    if _orchestrator is None:
        raise RuntimeError(
            "Orchestrator not initialized. Call initialize_orchestrator() first."
        )
    return _orchestrator


def build_orchestrator(settings: Settings) -> GenerationOrchestrator:
    """Wire clients, cache and orchestrator from settings."""
    service = GenerationServiceClient(
        base_url=settings.generation_api_base_url,
        api_key=settings.generation_api_key,
        model=settings.generation_model,
        callback_url=settings.callback_url(),
        timeout_seconds=settings.service_timeout_seconds,
        poll_timeout_seconds=settings.poll_timeout_seconds,
    )
    ledger = HttpLedgerClient(
        base_url=settings.ledger_gateway_url,
        api_key=settings.ledger_api_key,
        timeout_seconds=settings.ledger_timeout_seconds,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        receipt_poll_interval_seconds=settings.receipt_poll_interval_seconds,
    )
    storage = ArtifactStorageClient(
        api_url=settings.storage_api_url,
        api_token=settings.storage_api_token,
        gateway_url=settings.storage_gateway_url,
        timeout_seconds=settings.upload_timeout_seconds,
    )
    cache = ItemCacheStore(
        FileCacheBackend(settings.cache_dir),
        namespace=settings.cache_namespace,
        ttl_hours=settings.cache_ttl_hours,
    )
    return GenerationOrchestrator(
        service,
        ledger,
        storage,
        cache,
        poll_interval_seconds=settings.poll_interval_seconds,
        poll_max_backoff_seconds=settings.poll_max_backoff_seconds,
        max_concurrent_polls=settings.max_concurrent_polls,
        poll_rate_limit_per_second=settings.poll_rate_limit_per_second,
        ledger_refresh_interval_seconds=settings.ledger_refresh_interval_seconds,
        # Storage client makes up to two attempts
        upload_timeout_seconds=settings.upload_timeout_seconds * 2,
    )


def initialize_orchestrator(orchestrator: GenerationOrchestrator) -> GenerationOrchestrator:
    """Install the global orchestrator instance."""
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("Global orchestrator initialized")
    return orchestrator


def reset_orchestrator() -> None:
    """Reset the global orchestrator (for testing)."""
    global _orchestrator
    _orchestrator = None
