"""
Bounded status polling for remote generation jobs.

A PollingTask checks a task's status on a fixed cadence until the task
reaches a terminal state or the attempt budget runs out. It never cancels
anything: a caller that loses interest simply ignores the outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from integrations.meshy_client import MeshyAPIError, MeshyTask, MeshyTaskError, TaskStatus

logger = logging.getLogger("rigforge-server.polling")

# Errors on a single status check that are retried on the next tick
TRANSIENT_ERRORS = (httpx.HTTPError, MeshyAPIError)


class PollResult(str, Enum):
    """Terminal outcome of a poll."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PollProgress:
    """Advisory progress snapshot emitted after every status check."""
    task_id: str
    attempt: int
    max_attempts: int
    percent: float
    estimated_seconds_remaining: float
    status: Optional[TaskStatus] = None


@dataclass(frozen=True)
class PollOutcome:
    """How a poll ended, with the latest status snapshot if any."""
    task_id: str
    result: PollResult
    attempts: int
    task: Optional[MeshyTask] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result == PollResult.SUCCEEDED

    @property
    def artifact_url(self) -> Optional[str]:
        return self.task.artifact_url if self.task and self.succeeded else None

    def raise_for_result(self) -> None:
        """Raise MeshyTaskError unless the poll succeeded."""
        if not self.succeeded:
            raise MeshyTaskError(self.task_id, self.result.value, self.reason)


StatusCheck = Callable[[str], Awaitable[MeshyTask]]
ProgressCallback = Callable[[PollProgress], None]


class PollingTask:
    """
    Polls ``check_status(task_id)`` until a terminal outcome.

    A ``SUCCEEDED`` snapshot without an artifact URL is not terminal: the
    upstream sometimes reports success before the URL is attached, so
    polling continues within the same attempt budget.

    Usage:
        poller = PollingTask(interval=5.0, max_attempts=120)
        outcome = await poller.poll(task_id, client.check_status)
    """

    def __init__(
        self,
        *,
        interval: float = 5.0,
        max_attempts: int = 120,
        initial_delay: float = 2.0,
        expected_seconds: float = 60.0,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if interval < 0 or initial_delay < 0:
            raise ValueError("interval and initial_delay must be >= 0")

        self.interval = interval
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.expected_seconds = expected_seconds
        self.on_progress = on_progress
        self._sleep = sleep

        self.attempts = 0
        self.latest: Optional[MeshyTask] = None

    def estimated_seconds_remaining(self) -> float:
        return max(0.0, self.expected_seconds - self.attempts * self.interval)

    def _percent(self, task: Optional[MeshyTask]) -> float:
        if task is not None and task.progress is not None:
            return float(max(0, min(task.progress, 100)))
        return min(self.attempts / self.max_attempts * 90, 90)

    def _report(self, task_id: str) -> None:
        if not self.on_progress:
            return
        snapshot = PollProgress(
            task_id=task_id,
            attempt=self.attempts,
            max_attempts=self.max_attempts,
            percent=self._percent(self.latest),
            estimated_seconds_remaining=self.estimated_seconds_remaining(),
            status=self.latest.status if self.latest else None,
        )
        try:
            self.on_progress(snapshot)
        except Exception as e:
            logger.error(f"[Poll] Progress callback error for task {task_id}: {e}", exc_info=True)

    async def poll(self, task_id: str, check_status: StatusCheck) -> PollOutcome:
        """Run the poll loop and return the terminal outcome."""
        if self.initial_delay:
            await self._sleep(self.initial_delay)

        while True:
            self.attempts += 1
            try:
                task = await check_status(task_id)
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    f"[Poll] Status check {self.attempts}/{self.max_attempts} for task {task_id} failed: {e}"
                )
            else:
                self.latest = task
                outcome = self._terminal(task_id, task)
                if outcome is not None:
                    self._report(task_id)
                    return outcome
            self._report(task_id)

            if self.attempts >= self.max_attempts:
                logger.warning(f"[Poll] Task {task_id} timed out after {self.attempts} checks")
                return PollOutcome(
                    task_id=task_id,
                    result=PollResult.TIMEOUT,
                    attempts=self.attempts,
                    task=self.latest,
                    reason=f"timed out after {self.attempts} status checks",
                )

            await self._sleep(self.interval)

    def _terminal(self, task_id: str, task: MeshyTask) -> Optional[PollOutcome]:
        if task.status == TaskStatus.SUCCEEDED:
            if task.artifact_url:
                return PollOutcome(task_id, PollResult.SUCCEEDED, self.attempts, task)
            logger.info(f"[Poll] Task {task_id} reported SUCCEEDED without an artifact URL, still polling")
            return None
        if task.status == TaskStatus.FAILED:
            return PollOutcome(
                task_id, PollResult.FAILED, self.attempts, task,
                reason=task.error_message or "task failed",
            )
        if task.status == TaskStatus.CANCELED:
            return PollOutcome(
                task_id, PollResult.CANCELED, self.attempts, task,
                reason=task.error_message or "task canceled",
            )
        if task.status == TaskStatus.UNKNOWN:
            logger.debug(f"[Poll] Task {task_id} has unrecognized status {task.raw.get('status')!r}")
        return None


async def poll_task(
    task_id: str,
    check_status: StatusCheck,
    interval: float = 5.0,
    max_attempts: int = 120,
    **kwargs,
) -> PollOutcome:
    """Shorthand for ``PollingTask(...).poll(task_id, check_status)``."""
    poller = PollingTask(interval=interval, max_attempts=max_attempts, **kwargs)
    return await poller.poll(task_id, check_status)
