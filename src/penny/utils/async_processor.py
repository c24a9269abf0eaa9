"""
Background work queue for fire-and-forget jobs such as sampled evaluations
"""

import asyncio
import contextvars
import inspect
import time
import traceback
import uuid
from typing import Any, Callable, Dict, List, Optional

from penny.utils.logger import AgentLogger


class AsyncProcessor:
    """Run submitted coroutines on a bounded queue served by worker tasks"""

    def __init__(self, max_workers: int = 2, max_queue_size: int = 100,
                 max_results: int = 500, result_ttl_seconds: float = 3600,
                 logger: Optional[AgentLogger] = None):
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size
        self.max_results = max_results
        self.result_ttl_seconds = result_ttl_seconds
        self.logger = logger
        self.results: Dict[str, Dict[str, Any]] = {}
        self.status: Dict[str, str] = {}
        self.workers: List[asyncio.Task] = []
        self.running = True
        self._queue: Optional[asyncio.Queue] = None

    def _ensure_workers(self):
        """Start worker tasks on the running loop the first time work arrives"""
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        if not self.workers:
            loop = asyncio.get_running_loop()
            for i in range(self.max_workers):
                # Fresh context, so jobs do not inherit the submitting task's log run
                self.workers.append(contextvars.Context().run(
                    loop.create_task, self._worker(), name=f"AsyncWorker-{i}"
                ))

    async def _worker(self):
        """Worker task to process jobs"""
        while True:
            task_id, func, args, kwargs, timeout = await self._queue.get()
            self.status[task_id] = "running"
            try:
                outcome = func(*args, **kwargs)
                if inspect.isawaitable(outcome):
                    if timeout:
                        outcome = await asyncio.wait_for(outcome, timeout)
                    else:
                        outcome = await outcome
                self._finish(task_id, "completed", result=outcome)
            except asyncio.TimeoutError:
                self._finish(task_id, "timeout", error=f"Task timed out after {timeout} seconds")
            except asyncio.CancelledError:
                self._finish(task_id, "cancelled", error="Task cancelled")
                raise
            except Exception as e:
                self._finish(task_id, "failed", error=str(e), tb=traceback.format_exc())
                if self.logger:
                    self.logger.log_error("async_processor", e, {"task_id": task_id})
            finally:
                self._queue.task_done()

    def _finish(self, task_id: str, status: str, result: Any = None,
                error: Optional[str] = None, tb: Optional[str] = None):
        record = {"status": status, "time": time.time()}
        if status == "completed":
            record["result"] = result
        else:
            record["error"] = error
        if tb:
            record["traceback"] = tb
        self.results[task_id] = record
        self.status[task_id] = status

        self.cleanup_old_results(self.result_ttl_seconds)
        # Oldest finished records go first; queued and running jobs are kept
        while len(self.results) > self.max_results:
            oldest = next(iter(self.results))
            del self.results[oldest]
            self.status.pop(oldest, None)

    def submit(self, func: Callable, *args, timeout: Optional[float] = None, **kwargs) -> str:
        """
        Submit a job for background processing

        Args:
            func: Coroutine function (or plain callable) to execute
            *args: Function arguments
            timeout: Timeout in seconds (optional)
            **kwargs: Function keyword arguments

        Returns:
            task_id: Unique task identifier. A full queue or a shut-down
            processor marks the job "rejected" instead of blocking.
        """
        task_id = str(uuid.uuid4())

        if not self.running:
            self._finish(task_id, "rejected", error="Processor is shut down")
            return task_id

        self._ensure_workers()
        try:
            self._queue.put_nowait((task_id, func, args, kwargs, timeout))
        except asyncio.QueueFull:
            self._finish(task_id, "rejected", error="Queue is full")
            if self.logger:
                self.logger.log_step("backpressure", {"task_id": task_id, "queue_size": self.max_queue_size})
            return task_id

        self.status[task_id] = "queued"
        return task_id

    def get_result(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Get result record of a job, or None if not finished"""
        return self.results.get(task_id)

    def get_status(self, task_id: str) -> str:
        """Get status of a job"""
        return self.status.get(task_id, "unknown")

    def is_ready(self, task_id: str) -> bool:
        return task_id in self.results

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def drain(self):
        """Wait until every queued job has finished"""
        if self._queue is not None and self.workers:
            await self._queue.join()

    def cleanup_old_results(self, max_age_seconds: float = 3600):
        """Remove results older than max_age_seconds"""
        now = time.time()
        to_delete = [task_id for task_id, result in self.results.items()
                     if now - result.get("time", 0) > max_age_seconds]
        for task_id in to_delete:
            del self.results[task_id]
            self.status.pop(task_id, None)

    async def shutdown(self, wait: bool = True):
        """Stop accepting jobs, optionally finish queued ones, then stop workers"""
        self.running = False
        if wait:
            await self.drain()
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []
        self._queue = None
