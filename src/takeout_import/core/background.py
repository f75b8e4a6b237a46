"""Background task runner abstraction.

Fire-and-forget work (e.g. tearing down a worker after its final webhook)
is submitted here.  The submitter gets a task id back immediately; a task
that raises is logged and its error kept per task id.
"""

import asyncio
import enum
import uuid
from collections.abc import Coroutine
from typing import Any, Protocol

from loguru import logger


class TaskStatus(enum.StrEnum):
    """Status of a background task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BackgroundTaskRunner(Protocol):
    """Protocol for background task execution."""

    def submit_task(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> str:
        """Submit an async task for background execution.

        Args:
            coro: The coroutine to execute.
            name: Optional label used in log lines.

        Returns:
            A task ID string for tracking.
        """
        ...

    def get_status(self, task_id: str) -> TaskStatus:
        """Get the current status of a background task.

        Args:
            task_id: The task ID returned by submit_task.

        Returns:
            The current task status.
        """
        ...


class InProcessTaskRunner:
    """In-process background task runner using asyncio.

    Tasks run in the same process as the API server using
    asyncio.create_task().  Exceptions never propagate to the submitter;
    they are logged with the task label and kept for inspection.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, TaskStatus] = {}
        self._errors: dict[str, BaseException] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def submit_task(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> str:
        """Submit an async task for background execution.

        Args:
            coro: The coroutine to execute.
            name: Optional label used in log lines.

        Returns:
            A task ID string for tracking.
        """
        task_id = str(uuid.uuid4())
        label = name or task_id
        self._statuses[task_id] = TaskStatus.PENDING

        async def _run() -> None:
            self._statuses[task_id] = TaskStatus.RUNNING
            try:
                await coro
            except Exception as exc:
                self._statuses[task_id] = TaskStatus.FAILED
                self._errors[task_id] = exc
                logger.exception(f"Background task {label} failed")
                return
            self._statuses[task_id] = TaskStatus.COMPLETED

        task = asyncio.create_task(_run(), name=label)
        self._tasks[task_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(task_id, None))
        return task_id

    def get_status(self, task_id: str) -> TaskStatus:
        """Get the current status of a background task.

        Args:
            task_id: The task ID returned by submit_task.

        Returns:
            The current task status.

        Raises:
            KeyError: If the task ID is not found.
        """
        return self._statuses[task_id]

    def get_error(self, task_id: str) -> BaseException | None:
        """Return the exception a failed task raised, if any."""
        return self._errors.get(task_id)

    @property
    def pending_count(self) -> int:
        """Number of tasks that have not finished yet."""
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every outstanding task, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


# Singleton instance for the application
task_runner = InProcessTaskRunner()
