"""
Background Execution Module.

Runs engine computations on a dedicated worker thread so an interactive
caller is never blocked, and talks to it only through messages:

    caller ── TaskSubmission ──▶ inbox ──▶ worker
    caller ◀── TaskEvent ─────── events ◀─ worker

Each submission moves through ``QUEUED → RUNNING → {progress}* →
COMPLETED | FAILED | CANCELLED``. Payloads are deep-copied on submission and
events are frozen dataclasses, so caller and worker never share mutable data.

One executor runs one task at a time; further submissions wait in the inbox.
Create several executors to compute in parallel.

Cancellation is cooperative: ``cancel`` sets the task's token and the worker
notices at the next loop boundary (covariance row, pivot column, frontier
point, gradient iteration). A cancelled task never delivers a result.
"""

import copy
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import WORKER_YIELD_SECONDS, TASK_RETENTION_SECONDS
from portfolio_engine.engine import PortfolioEngine
from portfolio_engine.exceptions import TaskCancelledError
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import AssetData, OptimizationMethod, PortfolioConstraints
from portfolio_engine.progress import CancellationToken, ProgressReporter

logger = logging.getLogger(__name__)


class TaskType(Enum):
    MATRIX_INVERT = "matrix-invert"
    COVARIANCE = "covariance"
    PORTFOLIO_OPTIMIZATION = "portfolio-optimization"
    EFFICIENT_FRONTIER = "efficient-frontier"


class TaskStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

TASK_NAMES: Dict[TaskType, str] = {
    TaskType.MATRIX_INVERT: "Matrix Inversion",
    TaskType.COVARIANCE: "Covariance Matrix Calculation",
    TaskType.PORTFOLIO_OPTIMIZATION: "Portfolio Optimization",
    TaskType.EFFICIENT_FRONTIER: "Efficient Frontier Calculation",
}


@dataclass
class OptimizationTask:
    """
    Execution-layer record of one submission.

    Only the executor mutates these; ``get_task`` and ``all_tasks`` hand out
    copies.
    """
    task_id: str
    task_type: TaskType
    payload: Dict[str, Any]
    status: TaskStatus = TaskStatus.QUEUED
    progress_percent: float = 0.0
    message: str = "Task created"
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class TaskSubmission:
    task_id: str
    task_type: TaskType
    payload: Dict[str, Any]


@dataclass(frozen=True)
class TaskEvent:
    task_id: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TaskStarted(TaskEvent):
    task_name: str = ""


@dataclass(frozen=True)
class ProgressUpdate(TaskEvent):
    percent: float = 0.0
    message: str = ""


@dataclass(frozen=True)
class TaskCompleted(TaskEvent):
    result: Any = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class TaskFailed(TaskEvent):
    error_kind: str = ""
    message: str = ""


@dataclass(frozen=True)
class TaskCancelled(TaskEvent):
    pass


EventCallback = Callable[[TaskEvent], None]

_SHUTDOWN = object()


class BackgroundExecutor:
    """
    Single-worker task executor for engine computations.

    Attributes:
        engine: Engine whose configuration every task uses.
        events: Queue receiving every event, in emission order.
        event_callback: Optional callable invoked on the worker thread for
            every event of every task.
        yield_seconds: Pause after each progress emission.

    Example:
        >>> with BackgroundExecutor() as executor:
        ...     task_id = executor.submit(
        ...         TaskType.EFFICIENT_FRONTIER, {"assets": assets},
        ...         progress_callback=lambda e: print(e),
        ...     )
        ...     frontier = executor.result(task_id, timeout=30)
    """

    def __init__(
        self,
        engine: Optional[PortfolioEngine] = None,
        event_callback: Optional[EventCallback] = None,
        yield_seconds: float = WORKER_YIELD_SECONDS
    ) -> None:
        self.engine = engine or PortfolioEngine()
        self.event_callback = event_callback
        self.yield_seconds = yield_seconds
        self.events: "queue.Queue[TaskEvent]" = queue.Queue()

        self._inbox: queue.Queue = queue.Queue()
        self._tasks: Dict[str, OptimizationTask] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._futures: Dict[str, Future] = {}
        self._callbacks: Dict[str, EventCallback] = {}
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

        self._handlers = {
            TaskType.MATRIX_INVERT: self._run_matrix_invert,
            TaskType.COVARIANCE: self._run_covariance,
            TaskType.PORTFOLIO_OPTIMIZATION: self._run_portfolio_optimization,
            TaskType.EFFICIENT_FRONTIER: self._run_efficient_frontier,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread (idempotent; submit() calls it)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._worker_loop, name="portfolio-engine-worker", daemon=True
        )
        self._thread.start()

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Stop accepting work and stop the worker once the inbox drains.

        Args:
            wait: Block until the worker thread exits.
            cancel_pending: Cancel every queued or running task first.
        """
        self._closed = True
        if cancel_pending:
            with self._lock:
                for task_id, task in self._tasks.items():
                    if not task.is_terminal:
                        self._tokens[task_id].cancel()

        if self._thread is None:
            return
        self._inbox.put(_SHUTDOWN)
        if wait:
            self._thread.join()

    @property
    def ready(self) -> bool:
        """True while the worker thread is running."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    def __enter__(self) -> "BackgroundExecutor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True, cancel_pending=exc_type is not None)

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    def submit(
        self,
        task_type: Union[TaskType, str],
        payload: Optional[Dict[str, Any]] = None,
        progress_callback: Optional[EventCallback] = None
    ) -> str:
        """
        Queue a computation.

        Args:
            task_type: TaskType or its string value (e.g. "efficient-frontier").
            payload: Task arguments; deep-copied before queuing.
            progress_callback: Invoked on the worker thread with every event
                of this task.

        Returns:
            The new task's id.

        Raises:
            ValueError: If task_type is unknown.
            RuntimeError: If the executor has been shut down.
        """
        task_type = TaskType(task_type)
        if self._closed:
            raise RuntimeError("Executor has been shut down.")
        self.start()

        task_id = f"task_{uuid.uuid4().hex}"
        payload = copy.deepcopy(payload or {})

        with self._lock:
            self._tasks[task_id] = OptimizationTask(task_id, task_type, copy.deepcopy(payload))
            self._tokens[task_id] = CancellationToken()
            self._futures[task_id] = Future()
            if progress_callback is not None:
                self._callbacks[task_id] = progress_callback

        self._inbox.put(TaskSubmission(task_id, task_type, payload))
        logger.debug(f"Queued {task_type.value} task {task_id}")
        return task_id

    def cancel(self, task_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns:
            True if the request was registered, False if the task is unknown
            or already finished.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return False
            self._tokens[task_id].cancel()
        logger.info(f"Cancellation requested for task {task_id}")
        return True

    def result(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """
        Block until the task finishes and return its result.

        Raises:
            KeyError: If the task is unknown.
            TaskCancelledError: If the task was cancelled.
            concurrent.futures.TimeoutError: If timeout elapses first.
            Exception: The engine error that made the task fail.
        """
        with self._lock:
            future = self._futures[task_id]
        return future.result(timeout=timeout)

    def get_task(self, task_id: str) -> Optional[OptimizationTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return self._snapshot(task) if task is not None else None

    def all_tasks(self) -> List[OptimizationTask]:
        with self._lock:
            return [self._snapshot(task) for task in self._tasks.values()]

    @staticmethod
    def _snapshot(task: OptimizationTask) -> OptimizationTask:
        return replace(
            task, payload=copy.deepcopy(task.payload), result=copy.deepcopy(task.result)
        )

    def cleanup_tasks(self, max_age: float = TASK_RETENTION_SECONDS) -> int:
        """
        Drop finished tasks older than ``max_age`` seconds.

        Returns:
            Number of tasks removed.
        """
        now = time.time()
        with self._lock:
            expired = [
                task_id for task_id, task in self._tasks.items()
                if task.finished_at is not None and now - task.finished_at > max_age
            ]
            for task_id in expired:
                del self._tasks[task_id]
                self._tokens.pop(task_id, None)
                self._futures.pop(task_id, None)
                self._callbacks.pop(task_id, None)
        return len(expired)

    def statistics(self) -> Dict[str, Any]:
        """Task counts by status and average processing time of completed tasks."""
        tasks = self.all_tasks()
        completed = [t for t in tasks if t.status is TaskStatus.COMPLETED]
        durations = [
            t.finished_at - t.started_at for t in completed
            if t.started_at is not None and t.finished_at is not None
        ]
        return {
            "total_tasks": len(tasks),
            "queued_tasks": sum(t.status is TaskStatus.QUEUED for t in tasks),
            "running_tasks": sum(t.status is TaskStatus.RUNNING for t in tasks),
            "completed_tasks": len(completed),
            "failed_tasks": sum(t.status is TaskStatus.FAILED for t in tasks),
            "cancelled_tasks": sum(t.status is TaskStatus.CANCELLED for t in tasks),
            "average_processing_time": sum(durations) / len(durations) if durations else 0.0,
            "is_ready": self.ready,
        }

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        logger.info("Background worker ready")
        while True:
            submission = self._inbox.get()
            if submission is _SHUTDOWN:
                break
            self._execute(submission)
        logger.info("Background worker stopped")

    def _execute(self, submission: TaskSubmission) -> None:
        task_id = submission.task_id
        with self._lock:
            token = self._tokens[task_id]

        if token.cancelled:
            self._emit(TaskCancelled(task_id))
            return

        task_name = TASK_NAMES[submission.task_type]
        self._emit(TaskStarted(task_id, task_name=task_name))
        reporter = ProgressReporter(
            lambda percent, message: self._emit(
                ProgressUpdate(task_id, percent=percent, message=message)
            ),
            yield_seconds=self.yield_seconds,
        )

        start_time = time.perf_counter()
        try:
            result = self._handlers[submission.task_type](
                submission.payload, token, reporter
            )
            # A cancel that lands after the last checkpoint still wins
            token.raise_if_cancelled()
        except TaskCancelledError:
            logger.info(f"{task_name} task {task_id} cancelled")
            self._emit(TaskCancelled(task_id))
        except Exception as e:
            # Worker boundary: every failure is reported as an event
            kind = getattr(e, "kind", type(e).__name__)
            logger.error(f"{task_name} task {task_id} failed: {kind}: {e}")
            self._emit(TaskFailed(task_id, error_kind=kind, message=str(e)), error=e)
        else:
            elapsed = time.perf_counter() - start_time
            logger.info(f"{task_name} task {task_id} completed in {elapsed * 1000:.2f}ms")
            self._emit(TaskCompleted(task_id, result=result, elapsed=elapsed))

    def _emit(self, event: TaskEvent, error: Optional[BaseException] = None) -> None:
        """Apply an event to its task record, publish it, then settle the future."""
        with self._lock:
            task = self._tasks.get(event.task_id)
            if task is not None:
                self._apply(task, event)
            callback = self._callbacks.get(event.task_id)
            future = self._futures.get(event.task_id)

        if isinstance(event, ProgressUpdate):
            logger.debug(f"Task {event.task_id}: {event.percent:.0f}% {event.message}")
        self.events.put(event)
        for listener in (self.event_callback, callback):
            if listener is None:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event callback failed for task {event.task_id}")

        if future is None:
            return
        if isinstance(event, TaskCompleted):
            future.set_result(event.result)
        elif isinstance(event, TaskCancelled):
            future.set_exception(TaskCancelledError(f"Task {event.task_id} was cancelled"))
        elif isinstance(event, TaskFailed):
            future.set_exception(error or RuntimeError(event.message))

    @staticmethod
    def _apply(task: OptimizationTask, event: TaskEvent) -> None:
        if isinstance(event, TaskStarted):
            task.status = TaskStatus.RUNNING
            task.started_at = event.timestamp
            task.message = f"Started: {event.task_name}"
        elif isinstance(event, ProgressUpdate):
            task.progress_percent = event.percent
            task.message = event.message
        elif isinstance(event, TaskCompleted):
            task.status = TaskStatus.COMPLETED
            task.progress_percent = 100.0
            task.message = "Task completed successfully"
            task.result = event.result
            task.finished_at = event.timestamp
        elif isinstance(event, TaskFailed):
            task.status = TaskStatus.FAILED
            task.message = f"Error: {event.message}"
            task.error_kind = event.error_kind
            task.error_message = event.message
            task.finished_at = event.timestamp
        elif isinstance(event, TaskCancelled):
            task.status = TaskStatus.CANCELLED
            task.message = "Task was cancelled"
            task.result = None
            task.finished_at = event.timestamp

    # ------------------------------------------------------------------
    # Task handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _assets(payload: Dict[str, Any]) -> List[AssetData]:
        return [
            asset if isinstance(asset, AssetData) else AssetData(**asset)
            for asset in payload["assets"]
        ]

    @staticmethod
    def _constraints(payload: Dict[str, Any]) -> Optional[PortfolioConstraints]:
        constraints = payload.get("constraints")
        if constraints is None or isinstance(constraints, PortfolioConstraints):
            return constraints
        return PortfolioConstraints(**constraints)

    def _run_matrix_invert(
        self,
        payload: Dict[str, Any],
        token: CancellationToken,
        progress: ProgressReporter
    ) -> Any:
        progress.report(0.1, "Preparing matrix...")
        return self.engine.invert(
            payload["matrix"],
            regularization=payload.get("regularization"),
            token=token,
            progress=progress.span(0.3, 1.0),
        )

    def _run_covariance(
        self,
        payload: Dict[str, Any],
        token: CancellationToken,
        progress: ProgressReporter
    ) -> Any:
        if "assets" in payload:
            returns = [asset.returns for asset in self._assets(payload)]
        else:
            returns = payload["returns"]
        progress.report(0.1, f"Processing {len(returns)} assets...")
        return QuantMetrics.covariance_matrix(
            returns,
            scale=self.engine.config.covariance_scale,
            token=token,
            progress=progress.span(0.1, 1.0),
        )

    def _run_portfolio_optimization(
        self,
        payload: Dict[str, Any],
        token: CancellationToken,
        progress: ProgressReporter
    ) -> Any:
        method = OptimizationMethod(payload.get("method", OptimizationMethod.MIN_VARIANCE))
        progress.report(0.05, "Extracting returns data...")
        return self.engine.compute_portfolio(
            self._assets(payload),
            self._constraints(payload),
            method=method,
            risk_free_rate=payload.get("risk_free_rate"),
            token=token,
            progress=progress.span(0.05, 1.0),
        )

    def _run_efficient_frontier(
        self,
        payload: Dict[str, Any],
        token: CancellationToken,
        progress: ProgressReporter
    ) -> Any:
        return self.engine.compute_efficient_frontier(
            self._assets(payload),
            self._constraints(payload),
            num_points=payload.get("num_points"),
            token=token,
            progress=progress,
        )
