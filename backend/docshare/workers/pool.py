"""
Worker pool of isolated processing units.

Each unit is a separate OS process that talks to the pool manager only by
message passing over a pipe: the manager sends a task's arguments, the
unit sends back a result or an error description. A unit that hangs past
its timeout, dies, outgrows its memory budget or reaches its task quota is
terminated and replaced, and all memory it held goes with it. If the
replacement cannot be started, the next task sent to that slot retries the
start and fails with a crash outcome rather than waiting forever.

Tasks are dispatched FIFO by a dispatcher thread pool with exactly one
thread per unit, so at most ``size`` tasks run at once and the rest wait
in submission order.
"""
import enum
import logging
import multiprocessing
import os
import queue
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

from docshare.services.document_processor import process_document

logger = logging.getLogger(__name__)

STOP_JOIN_SECONDS = 5.0


class FailureKind(str, enum.Enum):
    """Why a task did not produce a result."""
    PROCESSOR_ERROR = "processor_error"
    TIMEOUT = "timeout"
    CRASH = "crash"


@dataclass(frozen=True)
class WorkerFailure:
    """Structured failure detail handed back to the caller."""
    kind: FailureKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class WorkerPoolError(Exception):
    """Base exception for worker pool errors."""
    pass


class WorkerTaskError(WorkerPoolError):
    """Raised when a task fails, times out, or its unit crashes."""

    def __init__(self, failure: WorkerFailure):
        self.failure = failure
        super().__init__(str(failure))


class PoolClosedError(WorkerPoolError):
    """Raised when submitting to a pool that has been shut down."""
    pass


def _peak_rss_mb() -> Optional[float]:
    if resource is None:
        return None
    # ru_maxrss is kilobytes on Linux
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024.0


def _unit_main(target: Callable, conn) -> None:
    """Entry point of a worker unit process."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    while True:
        try:
            args = conn.recv()
        except (EOFError, OSError):
            break
        if args is None:
            break

        try:
            payload = ("ok", target(*args), _peak_rss_mb())
        except Exception as e:
            payload = ("error", f"{type(e).__name__}: {e}", _peak_rss_mb())

        try:
            conn.send(payload)
        except (EOFError, OSError):
            break
        except Exception as e:
            # Result could not be pickled
            conn.send(("error", f"Result could not be returned: {e}", _peak_rss_mb()))
    conn.close()


class _WorkerUnit:
    """One isolated process plus the manager's end of its pipe."""

    def __init__(self, mp_context, target: Callable, unit_number: int):
        parent_conn, child_conn = mp_context.Pipe()
        self.name = f"docshare-worker-{unit_number}"
        self.process = mp_context.Process(
            target=_unit_main,
            args=(target, child_conn),
            name=self.name,
            daemon=True,
        )
        try:
            self.process.start()
        except BaseException:
            parent_conn.close()
            child_conn.close()
            raise
        child_conn.close()
        self.conn = parent_conn
        self.tasks_run = 0
        self.peak_rss_mb: Optional[float] = None

    def run(self, args: tuple, timeout: Optional[float]) -> Any:
        """
        Send one task and wait for its outcome.

        Raises:
            WorkerTaskError: processor error, timeout or crash
        """
        self.tasks_run += 1
        try:
            self.conn.send(args)
        except (BrokenPipeError, OSError) as e:
            raise WorkerTaskError(WorkerFailure(
                FailureKind.CRASH, f"{self.name} is not accepting work: {e}"
            ))

        try:
            ready = self.conn.poll(timeout)
        except OSError as e:
            raise WorkerTaskError(WorkerFailure(
                FailureKind.CRASH, f"{self.name} was stopped: {e}"
            ))
        if not ready:
            raise WorkerTaskError(WorkerFailure(
                FailureKind.TIMEOUT, f"Document processing timed out after {timeout:g}s"
            ))

        try:
            status, payload, rss = self.conn.recv()
        except (EOFError, OSError):
            self.process.join(timeout=1.0)
            raise WorkerTaskError(WorkerFailure(
                FailureKind.CRASH,
                f"{self.name} exited unexpectedly (exit code {self.process.exitcode})",
            ))

        self.peak_rss_mb = rss
        if status == "ok":
            return payload
        raise WorkerTaskError(WorkerFailure(FailureKind.PROCESSOR_ERROR, payload))

    def should_retire(self, max_tasks: Optional[int], max_memory_mb: Optional[int]) -> bool:
        if max_tasks is not None and self.tasks_run >= max_tasks:
            return True
        if max_memory_mb is not None and self.peak_rss_mb is not None:
            return self.peak_rss_mb > max_memory_mb
        return False

    def terminate(self) -> None:
        if self.process.is_alive():
            self.process.terminate()
            self.process.join(timeout=STOP_JOIN_SECONDS)
        if self.process.is_alive():
            self.process.kill()
            self.process.join(timeout=STOP_JOIN_SECONDS)
        self.conn.close()

    def stop(self) -> None:
        """Ask the unit to exit, terminating it if it does not."""
        try:
            self.conn.send(None)
        except (BrokenPipeError, OSError):
            pass
        self.process.join(timeout=STOP_JOIN_SECONDS)
        self.terminate()


class WorkerPool:
    """
    Bounded pool of isolated worker processes.

    Usage:
        with WorkerPool(size=2) as pool:
            processed = pool.execute("/data/report.pdf", "application/pdf", timeout=120)

    Args:
        size: Number of units (default: CPU count, capped at 4)
        target: Picklable top-level callable run inside each unit
        max_tasks_per_unit: Replace a unit after this many tasks
        max_memory_mb: Replace a unit whose peak RSS exceeds this
        start_method: multiprocessing start method ("spawn" by default)
    """

    def __init__(
        self,
        size: Optional[int] = None,
        target: Callable = process_document,
        max_tasks_per_unit: Optional[int] = None,
        max_memory_mb: Optional[int] = None,
        start_method: str = "spawn",
    ):
        if size is None:
            size = max(1, min(os.cpu_count() or 1, 4))
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")

        self.size = size
        self._target = target
        self._max_tasks = max_tasks_per_unit
        self._max_memory_mb = max_memory_mb
        self._mp = multiprocessing.get_context(start_method)

        self._lock = threading.Lock()
        self._idle_units: "queue.Queue[Optional[_WorkerUnit]]" = queue.Queue()
        self._units: Set[_WorkerUnit] = set()
        self._unit_counter = 0
        self._busy = 0
        self._queued = 0
        self._replaced = 0
        self._missing = 0
        self._closed = False

        self._dispatcher = ThreadPoolExecutor(
            max_workers=size,
            thread_name_prefix="docshare-dispatch",
        )
        for _ in range(size):
            self._idle_units.put(self._spawn_unit())

        logger.info("Worker pool started with %d units (%s)", size, start_method)

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "WorkerPool":
        """Build a pool from ``docshare.config.Settings``."""
        from docshare.config import get_settings

        settings = settings or get_settings()
        kwargs = dict(
            size=settings.worker_pool_size,
            max_tasks_per_unit=settings.worker_max_tasks_per_unit,
            max_memory_mb=settings.worker_max_memory_mb,
            start_method=settings.worker_start_method,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _spawn_unit(self) -> _WorkerUnit:
        with self._lock:
            self._unit_counter += 1
            number = self._unit_counter
        unit = _WorkerUnit(self._mp, self._target, number)
        with self._lock:
            self._units.add(unit)
        return unit

    def _retire_unit(self, unit: _WorkerUnit, reason: str) -> Optional[_WorkerUnit]:
        """
        Terminate ``unit`` and start its replacement.

        Returns None when the pool is closed or the replacement could not be
        started; in the latter case the slot is counted as missing and the
        next task to reach it retries the start.
        """
        logger.warning("Replacing %s: %s", unit.name, reason)
        unit.terminate()
        with self._lock:
            self._units.discard(unit)
            self._replaced += 1
            closed = self._closed
        if closed:
            return None
        try:
            return self._spawn_unit()
        except Exception:
            logger.exception("Could not start a replacement for %s", unit.name)
            with self._lock:
                self._missing += 1
            return None

    def _restore_missing_unit(self) -> _WorkerUnit:
        """Start a unit for a slot whose replacement failed earlier."""
        with self._lock:
            closed = self._closed
        if closed:
            raise WorkerTaskError(WorkerFailure(FailureKind.CRASH, "Worker pool is shutting down"))
        try:
            unit = self._spawn_unit()
        except Exception as e:
            logger.exception("Could not start a worker unit")
            raise WorkerTaskError(WorkerFailure(
                FailureKind.CRASH, f"Could not start a worker unit: {e}"
            )) from e
        with self._lock:
            self._missing -= 1
        logger.info("Restored missing worker slot with %s", unit.name)
        return unit

    def submit(self, *args, timeout: Optional[float] = None) -> Future:
        """
        Queue a task; it runs as soon as a unit is free (FIFO).

        The future resolves to the target's return value or raises
        ``WorkerTaskError``. ``timeout`` is measured from the moment a unit
        receives the task.
        """
        with self._lock:
            if self._closed:
                raise PoolClosedError("Worker pool has been shut down")
            self._queued += 1
        return self._dispatcher.submit(self._run_task, args, timeout)

    def execute(self, *args, timeout: Optional[float] = None) -> Any:
        """Run a task and block until it resolves."""
        return self.submit(*args, timeout=timeout).result()

    def _run_task(self, args: tuple, timeout: Optional[float]) -> Any:
        # One dispatcher thread per slot, so a slot is always available here.
        # A slot holds a unit, or None when its replacement failed to start.
        unit = self._idle_units.get()
        with self._lock:
            self._queued -= 1
            self._busy += 1

        retire_reason = None
        try:
            if unit is None:
                unit = self._restore_missing_unit()
            result = unit.run(args, timeout)
            if unit.should_retire(self._max_tasks, self._max_memory_mb):
                retire_reason = (
                    f"recycled after {unit.tasks_run} tasks "
                    f"(peak RSS {unit.peak_rss_mb or 0:.0f} MB)"
                )
            return result
        except WorkerTaskError as e:
            if e.failure.kind in (FailureKind.TIMEOUT, FailureKind.CRASH):
                retire_reason = str(e.failure)
            elif unit.should_retire(self._max_tasks, self._max_memory_mb):
                retire_reason = "recycled after processor error"
            raise
        except BaseException as e:
            retire_reason = f"dispatcher error: {e}"
            raise
        finally:
            with self._lock:
                self._busy -= 1
            if unit is not None and retire_reason is not None:
                unit = self._retire_unit(unit, retire_reason)
            self._idle_units.put(unit)

    def stats(self) -> Dict[str, int]:
        """Unit counts used by the scheduler for backpressure."""
        # A missing slot still counts as idle: the task that reaches it restarts its unit
        with self._lock:
            busy = self._busy
            return {
                "total": self.size,
                "busy": busy,
                "idle": self.size - busy,
                "queued": self._queued,
                "replaced": self._replaced,
                "missing": self._missing,
            }

    @property
    def idle_count(self) -> int:
        return self.stats()["idle"]

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting work and stop every unit.

        With ``wait=False`` queued tasks are cancelled and running units
        are terminated immediately.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if not wait:
            with self._lock:
                running = list(self._units)
            for unit in running:
                unit.terminate()
        self._dispatcher.shutdown(wait=wait, cancel_futures=not wait)

        with self._lock:
            remaining = list(self._units)
            self._units.clear()
        for unit in remaining:
            unit.stop()
        logger.info("Worker pool shut down")

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=exc_type is None)
