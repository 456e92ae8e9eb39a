"""
Async Task Manager for the support engine.

Implements:
- Background unit-of-work processing on an asyncio worker pool
- Per-key de-duplication and serialization
- Retry with bounded exponential backoff owned by the manager
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from support_engine.config.settings import WorkerConfig, config
from support_engine.contracts.collaborators import JobScheduler
from support_engine.observability.metrics import EngineMetrics
from support_engine.utils.error_handling import NotFoundError, RetryPolicy, TaskFailedError, classify_error

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "running", "completed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def unit_name(unit: Callable) -> str:
    return getattr(unit, "unit_name", None) or getattr(unit, "__qualname__", None) or type(unit).__name__


class AsyncTaskManager(JobScheduler):
    """
    Manages asynchronous units of work and background processing.

    A key identifies a unit of work: while a task with the same key is
    pending, running or completed, submitting it again returns the existing
    task id. Failed keys may be resubmitted.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[EngineMetrics] = None,
        settings: Optional[WorkerConfig] = None,
    ):
        settings = settings or config.worker
        self.max_workers = max_workers or settings.max_workers
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_attempts,
            initial_delay=settings.backoff_initial_seconds,
            max_delay=settings.backoff_max_seconds,
        )
        self.metrics = metrics
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.queue: asyncio.Queue = asyncio.Queue()
        self.workers = []
        self.running = False
        self._keys: Dict[str, str] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._done: Dict[str, asyncio.Event] = {}

    async def start(self):
        """Start worker pool."""
        if self.running:
            return
        self.running = True
        self.workers = [
            asyncio.create_task(self._worker(i))
            for i in range(self.max_workers)
        ]
        logger.info(f"Started {self.max_workers} background workers")

    async def stop(self):
        """Drain the queue and stop the worker pool."""
        if self.workers:
            await self.queue.join()
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []
        logger.info("Stopped background workers")

    async def drain(self):
        """Wait until every queued unit has finished."""
        await self.queue.join()

    async def enqueue(self, unit: Callable[..., Any], *args, key: Optional[str] = None) -> str:
        return await self.submit(unit, *args, key=key)

    async def submit(self, unit: Callable[..., Any], *args, key: Optional[str] = None, **kwargs) -> str:
        """Submit a unit of work; returns its task id."""
        if key is not None:
            existing = self._keys.get(key)
            if existing and self.tasks[existing]["status"] in ACTIVE_STATUSES:
                logger.debug(f"Task for key {key} already {self.tasks[existing]['status']} as {existing}")
                return existing

        task_id = str(uuid.uuid4())
        self.tasks[task_id] = {
            "id": task_id,
            "key": key,
            "unit": unit_name(unit),
            "status": "pending",
            "attempts": 0,
            "created_at": _now(),
            "func": unit,
            "args": args,
            "kwargs": kwargs,
        }
        self._done[task_id] = asyncio.Event()
        if key is not None:
            self._keys[key] = task_id
        await self.queue.put(task_id)

        logger.info(f"Task {task_id} submitted ({self.tasks[task_id]['unit']}, key={key})")
        return task_id

    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        """Get status of a submitted task."""
        task = self.tasks.get(task_id)
        if task is None:
            return {"status": "not_found"}
        return {k: v for k, v in task.items() if k not in ("func", "args", "kwargs")}

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """
        Wait for a task and return its result.

        Raises:
            NotFoundError: for unknown task ids.
            TaskFailedError: when the task failed terminally.
            asyncio.TimeoutError: when ``timeout`` elapses first.
        """
        if task_id not in self.tasks:
            raise NotFoundError(f"Task {task_id} not found")
        await asyncio.wait_for(self._done[task_id].wait(), timeout=timeout)
        task = self.tasks[task_id]
        if task["status"] == "failed":
            raise TaskFailedError(task_id, task.get("exception"))
        return task.get("result")

    def _key_lock(self, key: Optional[str]) -> Optional[asyncio.Lock]:
        if key is None:
            return None
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def _run(self, task: Dict[str, Any]) -> Any:
        result = None
        async for attempt in self.retry_policy.retrying():
            with attempt:
                task["attempts"] = attempt.retry_state.attempt_number
                if task["attempts"] > 1 and self.metrics:
                    self.metrics.record_job_retry(task["unit"])
                result = task["func"](*task["args"], **task["kwargs"])
                if asyncio.iscoroutine(result):
                    result = await result
        return result

    async def _execute(self, task_id: str, worker_id: int):
        task = self.tasks[task_id]
        task["status"] = "running"
        task["started_at"] = _now()
        task["worker_id"] = worker_id
        logger.info(f"Worker {worker_id} processing task {task_id}")

        lock = self._key_lock(task["key"])
        try:
            if lock is not None:
                async with lock:
                    result = await self._run(task)
            else:
                result = await self._run(task)
            task["status"] = "completed"
            task["result"] = result
        except Exception as e:
            category = classify_error(e)
            logger.error(
                f"Task {task_id} ({task['unit']}) failed after {task['attempts']} attempts [{category}]: {e}"
            )
            task["status"] = "failed"
            task["error"] = str(e)
            task["error_category"] = category
            task["exception"] = e
            if self.metrics:
                self.metrics.record_job_failure(task["unit"])
        finally:
            task["completed_at"] = _now()
            self._done[task_id].set()

    async def _worker(self, worker_id: int):
        """Worker process to consume tasks from queue."""
        logger.info(f"Worker {worker_id} started")

        while self.running:
            try:
                task_id = await self.queue.get()
            except asyncio.CancelledError:
                break
            try:
                if task_id in self.tasks:
                    await self._execute(task_id, worker_id)
            except asyncio.CancelledError:
                self.queue.task_done()
                break
            self.queue.task_done()
