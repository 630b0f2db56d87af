#!/usr/bin/env python3
"""
Worker Pool Module for Escudeiro

Runs blocking work (interpreter subprocesses, listing renders that stat the
filesystem) on a thread pool so that a slow task never stalls the event loop
serving other requests.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Any, Dict
import time

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for worker pool"""
    max_workers: int = 16
    task_timeout: Optional[float] = None  # None waits for the task indefinitely


@dataclass
class TaskResult:
    """Result of a worker task"""
    success: bool
    task_id: str
    result: Any = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class TaskMetrics:
    """Metrics for tracking worker pool performance"""
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    timed_out_tasks: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def success_rate(self) -> float:
        """Calculate success rate as a percentage"""
        if self.total_tasks == 0:
            return 0.0
        return (self.completed_tasks / self.total_tasks) * 100.0

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time since start"""
        return time.time() - self.start_time


class WorkerPool:
    """
    Thread pool for blocking request work.

    Tasks are submitted from coroutines and awaited without blocking the
    event loop. Each submission is tracked so that shutdown can wait for
    in-flight work before the executor is torn down.
    """

    def __init__(self, config: Optional[WorkerConfig] = None):
        """
        Initialize worker pool with configuration.

        Args:
            config: WorkerConfig instance or None for defaults
        """
        self.config = config or WorkerConfig()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._active_tasks: Dict[str, asyncio.Future] = {}
        self._shutdown = False
        self.metrics = TaskMetrics()

        logger.info(f"Initializing WorkerPool with {self.config.max_workers} thread workers")

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._shutdown

    async def start(self):
        """Start the worker pool"""
        if self._executor is not None:
            logger.warning("WorkerPool already started")
            return

        self._shutdown = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="escudeiro-worker"
        )
        logger.info(f"WorkerPool started with {self.config.max_workers} workers")

    async def shutdown(self, wait: bool = True):
        """
        Shutdown the worker pool.

        Args:
            wait: Wait for pending tasks to complete
        """
        self._shutdown = True

        if wait and self._active_tasks:
            logger.info(f"Waiting for {len(self._active_tasks)} active tasks to complete")
            await asyncio.gather(*self._active_tasks.values(), return_exceptions=True)

        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

        logger.info("WorkerPool shutdown complete")

    async def submit_task(
        self,
        task_id: str,
        func: Callable,
        *args,
        timeout: Optional[float] = None,
        **kwargs
    ) -> TaskResult:
        """
        Run a blocking function on the pool.

        Args:
            task_id: Identifier used in logs
            func: Function to execute
            *args: Positional arguments for the function
            timeout: Overrides the configured task timeout
            **kwargs: Keyword arguments for the function

        Returns:
            TaskResult with execution details
        """
        if self._shutdown:
            return TaskResult(
                success=False,
                task_id=task_id,
                error="WorkerPool is shutting down"
            )

        if self._executor is None:
            await self.start()

        if timeout is None:
            timeout = self.config.task_timeout

        self.metrics.total_tasks += 1
        start_time = time.time()
        loop = asyncio.get_running_loop()

        future = loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))
        key = f"{task_id}#{id(future)}"
        self._active_tasks[key] = future
        try:
            result = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

            duration = time.time() - start_time
            self.metrics.completed_tasks += 1
            logger.debug(f"Task {task_id} completed successfully in {duration:.2f}s")
            return TaskResult(
                success=True,
                task_id=task_id,
                result=result,
                duration=duration
            )

        except asyncio.TimeoutError:
            error = f"Task timeout after {timeout}s"
            self.metrics.timed_out_tasks += 1

        except Exception as e:
            error = str(e)

        finally:
            if future.done():
                self._active_tasks.pop(key, None)
            else:
                future.add_done_callback(lambda _f, k=key: self._active_tasks.pop(k, None))

        duration = time.time() - start_time
        self.metrics.failed_tasks += 1

        logger.error(f"Task {task_id} failed: {error}")

        return TaskResult(
            success=False,
            task_id=task_id,
            error=error,
            duration=duration
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get current worker pool metrics"""
        return {
            "total_tasks": self.metrics.total_tasks,
            "completed_tasks": self.metrics.completed_tasks,
            "failed_tasks": self.metrics.failed_tasks,
            "timed_out_tasks": self.metrics.timed_out_tasks,
            "active_tasks": len(self._active_tasks),
            "success_rate": self.metrics.success_rate,
            "elapsed_time": self.metrics.elapsed_time,
            "max_workers": self.config.max_workers,
        }
