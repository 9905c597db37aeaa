"""
Reconciliation loop.

Polls the generation service for every pending task at a fixed interval,
backing off per task after transient failures. Push callbacks are handled
elsewhere; both paths meet at the orchestrator's completion guard.
"""

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Iterable

from asyncio_throttle.throttler import Throttler
import structlog

from beatstudio.errors import PollTransientError

logger = structlog.get_logger(__name__)


def pending_tasks(
    all_tasks: Iterable[str],
    completed_tasks: Iterable[str],
    locally_tracked: Iterable[str],
) -> set[str]:
    """Tasks still awaiting a result: ``(all ∪ locally_tracked) − completed``."""
    return (set(all_tasks) | set(locally_tracked)) - set(completed_tasks)


class ReconciliationLoop:
    """
    Background poller for pending tasks.

    The loop idles while nothing is pending and wakes when ``wake()`` or
    ``force_poll()`` is called. ``tick()`` runs one pass and can be driven
    directly in tests.
    """

    def __init__(
        self,
        poll: Callable[[str], Awaitable[object]],
        pending: Callable[[], set[str]],
        interval_seconds: float = 5.0,
        max_backoff_seconds: float = 60.0,
        max_concurrent: int = 4,
        rate_limit_per_second: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the loop.

        Args:
            poll: Coroutine polling one task; raises PollTransientError on
                transient failure
            pending: Returns the current pending task set
            interval_seconds: Poll interval per task
            max_backoff_seconds: Cap on the per-task back-off delay
            max_concurrent: Maximum polls in flight
            rate_limit_per_second: Maximum polls started per second
            clock: Monotonic time source
        """
        self._poll = poll
        self._pending = pending
        self.interval = interval_seconds
        self.max_backoff = max_backoff_seconds
        self._clock = clock
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.throttler = Throttler(rate_limit=rate_limit_per_second, period=1.0)

        self._next_due: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._forced: set[str] = set()
        self._inflight: set[str] = set()
        self._polls: set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        self._runner: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def backoff_delay(self, failures: int) -> float:
        """Delay before the next poll after ``failures`` consecutive failures."""
        return min(self.interval * (2**failures), self.max_backoff)

    def failures(self, task_id: str) -> int:
        return self._failures.get(task_id, 0)

    def next_due(self, task_id: str) -> float | None:
        return self._next_due.get(task_id)

    def wake(self) -> None:
        self._wake.set()

    def force_poll(self, task_id: str) -> None:
        """Poll a task on the next pass regardless of its schedule or pending state."""
        self._forced.add(task_id)
        logger.debug("Out-of-cycle poll requested", task_id=task_id)
        self._wake.set()

    async def tick(self) -> list[str]:
        """
        Poll every due task once and wait for those polls to finish.

        Returns:
            Task ids polled in this pass
        """
        due, polls = self._dispatch()
        if polls:
            await asyncio.gather(*polls)
        return due

    def _dispatch(self) -> tuple[list[str], list[asyncio.Task]]:
        """Start a poll task for every due task without waiting on it."""
        now = self._clock()
        pending = self._pending()

        for task_id in list(self._next_due):
            if task_id not in pending and task_id not in self._forced:
                self._next_due.pop(task_id, None)
                self._failures.pop(task_id, None)

        due = [
            task_id
            for task_id in sorted(pending | self._forced)
            if task_id not in self._inflight
            and (task_id in self._forced or self._next_due.get(task_id, now) <= now)
        ]
        self._forced.difference_update(due)

        polls = []
        for task_id in due:
            self._inflight.add(task_id)
            poll = asyncio.create_task(self._poll_one(task_id))
            self._polls.add(poll)
            poll.add_done_callback(self._polls.discard)
            polls.append(poll)
        return due, polls

    async def _poll_one(self, task_id: str) -> None:
        try:
            async with self.semaphore, self.throttler:
                await self._poll(task_id)
        except PollTransientError as e:
            failures = self._failures.get(task_id, 0) + 1
            self._failures[task_id] = failures
            delay = self.backoff_delay(failures)
            self._next_due[task_id] = self._clock() + delay
            logger.warning(
                "Status poll failed, backing off",
                task_id=task_id,
                error_type="PollTransientError",
                error=str(e),
                consecutive_failures=failures,
                retry_in_seconds=delay,
            )
        except Exception as e:
            failures = self._failures.get(task_id, 0) + 1
            self._failures[task_id] = failures
            self._next_due[task_id] = self._clock() + self.backoff_delay(failures)
            logger.exception("Unexpected error while polling task", task_id=task_id, error=str(e))
        else:
            self._failures.pop(task_id, None)
            self._next_due[task_id] = self._clock() + self.interval
        finally:
            self._inflight.discard(task_id)
            self._wake.set()

    def _seconds_until_next_due(self) -> float:
        # In-flight polls set the wake event when they finish.
        if self._forced - self._inflight:
            return 0.0
        pending = self._pending() - self._inflight
        now = self._clock()
        upcoming = [self._next_due.get(t, now) for t in pending]
        if not upcoming:
            return self.interval
        return max(0.0, min(upcoming) - now)

    async def _run(self) -> None:
        logger.info("Reconciliation loop started", interval_seconds=self.interval)
        while True:
            self._wake.clear()
            if not self._pending() and not self._forced:
                await self._wake.wait()
                continue

            self._dispatch()

            delay = self._seconds_until_next_due()
            if delay > 0:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
            else:
                await asyncio.sleep(0)

    def start(self) -> None:
        if self.is_running:
            return
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop polling and forget all per-task schedule state."""
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
            logger.info("Reconciliation loop stopped")
        polls = list(self._polls)
        for poll in polls:
            poll.cancel()
        for poll in polls:
            with contextlib.suppress(asyncio.CancelledError):
                await poll
        self._polls.clear()
        self._next_due.clear()
        self._failures.clear()
        self._forced.clear()
        self._inflight.clear()

    def stats(self) -> dict[str, object]:
        return {
            "running": self.is_running,
            "scheduled": len(self._next_due),
            "backing_off": {t: n for t, n in self._failures.items() if n},
            "forced": sorted(self._forced),
            "inflight": sorted(self._inflight),
        }
