"""
Background Worker - Runs heavy operations off the tick-critical path.

Batch gradient steps, generation evaluation, validation and model saving
are submitted as tasks. Each submission returns a Future that resolves to a
TaskResult, so results are handed back thread-safely and a decision request
never waits on training.

A failing task never propagates: it yields TaskResult(success=False) and
the error is logged.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging
import threading
import time
import uuid

logger = logging.getLogger(__name__)


class TaskType(Enum):
    """Kinds of background work"""
    TRAIN_BATCH = "train_batch"
    EVOLVE = "evolve"
    VALIDATE = "validate"
    SAVE_MODEL = "save_model"
    CUSTOM = "custom"


@dataclass
class Task:
    """A unit of background work"""
    task_id: str
    task_type: TaskType
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, task_type: TaskType, fn: Callable[..., Any],
               *args, **kwargs) -> 'Task':
        return cls(
            task_id=str(uuid.uuid4())[:12],
            task_type=task_type,
            fn=fn,
            args=args,
            kwargs=kwargs,
        )


@dataclass
class TaskResult:
    """Outcome of a background task"""
    task_id: str
    task_type: TaskType
    success: bool
    value: Any = None
    error: Optional[str] = None
    processing_time: float = 0.0


class BackgroundWorker:
    """
    Thread pool for heavy learning operations.

    With the default single thread, tasks run in submission order.
    """

    def __init__(self, max_workers: int = 1, name: str = "learning-worker"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix=name)
        self._lock = threading.Lock()
        self._shutdown = False

        self.tasks_submitted = 0
        self.tasks_completed = 0
        self.tasks_failed = 0
        self.total_processing_time = 0.0
        self.pending = 0
        self.start_time = time.time()

        logger.info(f"Worker {name} initialized with {max_workers} thread(s)")

    def submit(self, task_type: TaskType, fn: Callable[..., Any],
               *args, **kwargs) -> Future:
        """Queue work and return a Future[TaskResult]"""
        task = Task.create(task_type, fn, *args, **kwargs)
        with self._lock:
            if self._shutdown:
                raise RuntimeError(f"Worker {self.name} is shut down")
            self.tasks_submitted += 1
            self.pending += 1
            return self._executor.submit(self._run, task)

    def _run(self, task: Task) -> TaskResult:
        start_time = time.time()
        try:
            value = task.fn(*task.args, **task.kwargs)
            result = TaskResult(task_id=task.task_id, task_type=task.task_type,
                                success=True, value=value)
        except Exception as e:
            logger.error(f"Worker {self.name} task {task.task_id} "
                         f"({task.task_type.value}) error: {e}")
            result = TaskResult(task_id=task.task_id, task_type=task.task_type,
                                success=False, error=str(e))

        result.processing_time = time.time() - start_time
        with self._lock:
            self.pending -= 1
            self.total_processing_time += result.processing_time
            if result.success:
                self.tasks_completed += 1
            else:
                self.tasks_failed += 1
        return result

    def shutdown(self, wait: bool = True):
        """Stop accepting work; with wait, in-flight tasks finish first"""
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._executor.shutdown(wait=wait)
        logger.info(f"Worker {self.name} shut down")

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def get_status(self) -> Dict[str, Any]:
        """Get worker status"""
        with self._lock:
            finished = self.tasks_completed + self.tasks_failed
            return {
                'name': self.name,
                'tasks_submitted': self.tasks_submitted,
                'tasks_completed': self.tasks_completed,
                'tasks_failed': self.tasks_failed,
                'pending': self.pending,
                'avg_processing_time': (
                    self.total_processing_time / finished if finished > 0 else 0
                ),
                'uptime_seconds': time.time() - self.start_time,
                'shutdown': self._shutdown,
            }
