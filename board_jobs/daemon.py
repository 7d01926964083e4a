"""
Single-instance scheduler daemon that drives the job queue.

``QueueDaemon`` fires ``JobQueueService.process_all_pending_jobs`` on a cron
schedule, bounds every execution with a timeout, retries failed executions a
fixed number of times, and shuts down gracefully on request. Process-level
bookkeeping (lock file, in-flight operations, health, cleanup) lives in
``ProcessManager``.
"""

import asyncio
import logging
import os
import resource
import sys
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import UUID

import psutil
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil import tz

from board_jobs.config import SchedulerConfig
from board_jobs.errors import ExecutionTimeoutError, LockAcquisitionError
from board_jobs.models import BatchResult, JobType
from board_jobs.registry import JobRegistry, job_registry
from board_jobs.service import JobQueueService

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class DaemonState(str, Enum):
    """Lifecycle of the daemon process."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class LockFile:
    """Lock file plus PID file guarding against a second daemon instance."""

    def __init__(self, lock_path: str, pid_path: str, logger: Optional[logging.Logger] = None):
        self.lock_path = lock_path
        self.pid_path = pid_path
        self.logger = logger or logging.getLogger(__name__)
        self.held = False

    def acquire(self) -> None:
        """
        Create the lock file atomically, then write the PID file.

        A lock file left behind by a process that no longer exists is removed
        and the lock taken over.

        Raises:
            LockAcquisitionError: If the lock file is held by a running process
        """
        pid = str(os.getpid())
        try:
            fd = self._create_lock()
        except FileExistsError as e:
            holder = self.read_pid()
            if holder is not None and pid_is_running(holder):
                raise LockAcquisitionError(
                    self.lock_path,
                    f"Lock file {self.lock_path} is held by running process {holder}",
                ) from e

            self.logger.warning(
                f"Removing stale lock {self.lock_path} (pid {holder} is not running)"
            )
            try:
                os.remove(self.lock_path)
            except FileNotFoundError:
                pass
            try:
                fd = self._create_lock()
            except FileExistsError as race:
                raise LockAcquisitionError(self.lock_path) from race

        with os.fdopen(fd, "w") as f:
            f.write(pid)
        self.held = True

        with open(self.pid_path, "w") as f:
            f.write(pid)
        self.logger.info(f"Acquired lock {self.lock_path} (pid {pid})")

    def release(self) -> None:
        """Remove the PID and lock files if this process created them."""
        if not self.held:
            return

        for path in (self.pid_path, self.lock_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.error(f"Failed to remove {path}: {e}")
        self.held = False
        self.logger.info("Removed PID and lock files")

    def read_pid(self) -> Optional[int]:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            with open(self.lock_path) as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def holder(self) -> Optional[int]:
        """PID of the running process holding the lock, if any."""
        pid = self.read_pid()
        if pid is not None and pid_is_running(pid):
            return pid
        return None

    def _create_lock(self) -> int:
        return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)


def pid_is_running(pid: int) -> bool:
    """Signal 0 checks that the process exists without touching it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


def rss_mb() -> float:
    """Current resident set size of this process in megabytes."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def peak_rss_mb() -> float:
    """Peak resident set size of this process in megabytes."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes
    if sys.platform == "darwin":
        return usage / (1024 * 1024)
    return usage / 1024


class ProcessManager:
    """
    Owns the process lifecycle: state, active operations, health and cleanup.

    The set of active operations belongs to the instance, so several managers
    (for example in tests) never share in-flight work.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        lock: Optional[LockFile] = None,
        logger: Optional[logging.Logger] = None,
        memory_reader: Callable[[], float] = rss_mb,
        peak_memory_reader: Callable[[], float] = peak_rss_mb,
    ):
        self.config = config
        self.lock = lock or LockFile(config.lock_file, config.pid_file, logger)
        self.logger = logger or logging.getLogger(__name__)
        self.state = DaemonState.INITIALIZING
        self.started_at = time.monotonic()
        self.forced = False
        self.emergency = False
        self._memory_reader = memory_reader
        self._peak_memory_reader = peak_memory_reader
        self._active: Set[asyncio.Future] = set()
        self._shutdown_event = asyncio.Event()
        self._force_event = asyncio.Event()
        self._cleaned_up = False

    @property
    def active_operations(self) -> int:
        return len(self._active)

    @property
    def accepting_work(self) -> bool:
        return self.state == DaemonState.RUNNING

    @property
    def exit_code(self) -> int:
        return EXIT_FAILURE if self.forced or self.emergency else EXIT_OK

    def track(self, awaitable) -> asyncio.Future:
        """Register an operation so shutdown can wait for it."""
        task = asyncio.ensure_future(awaitable)
        self._active.add(task)
        task.add_done_callback(self._active.discard)
        return task

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def request_shutdown(self, signame: str) -> None:
        """
        Record a shutdown request; safe to call from a signal handler.

        A second request while already shutting down forces an immediate exit
        with a failure status.
        """
        if self.state in (DaemonState.SHUTTING_DOWN, DaemonState.STOPPED):
            self.logger.error(f"Received {signame} during shutdown, forcing exit")
            self.forced = True
            self._force_event.set()
            return

        self.logger.info(f"Received {signame}, starting graceful shutdown")
        self.state = DaemonState.SHUTTING_DOWN
        self._shutdown_event.set()

    def emergency_shutdown(self, error: BaseException) -> None:
        """Fatal error path: no draining, cleanup runs and the exit status is 1."""
        self.logger.critical(f"Emergency shutdown: {error!r}", exc_info=error)
        self.emergency = True
        self.state = DaemonState.SHUTTING_DOWN
        self._shutdown_event.set()
        self._force_event.set()

    async def health_check(self) -> Dict[str, Any]:
        """
        Log uptime, memory and in-flight work.

        The warning compares the current RSS against ``memory_warning_mb``;
        the peak is reported for information only.
        """
        memory_mb = self._memory_reader()
        report = {
            "state": self.state.value,
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "rss_mb": round(memory_mb, 1),
            "peak_rss_mb": round(self._peak_memory_reader(), 1),
            "active_operations": self.active_operations,
        }
        self.logger.info(
            f"Health check: uptime {report['uptime_seconds']}s, "
            f"RSS {report['rss_mb']}MB (peak {report['peak_rss_mb']}MB), "
            f"{report['active_operations']} active operations"
        )
        if memory_mb > self.config.memory_warning_mb:
            self.logger.warning(
                f"High memory usage: {report['rss_mb']}MB "
                f"(threshold {self.config.memory_warning_mb}MB)"
            )
        return report

    async def drain(self) -> bool:
        """
        Wait for active operations up to the drain timeout, then cancel the rest.

        Returns True if everything finished on its own.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.drain_timeout_seconds

        if self._active:
            self.logger.info(f"Waiting for {len(self._active)} active operations")

        while self._active and not self._force_event.is_set():
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            force_waiter = asyncio.ensure_future(self._force_event.wait())
            try:
                await asyncio.wait(
                    [*self._active, force_waiter],
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                force_waiter.cancel()

        if not self._active:
            return True

        self.logger.warning(f"Cancelling {len(self._active)} operations still running")
        await self.cancel_active()
        return False

    async def cancel_active(self) -> None:
        pending = list(self._active)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def cleanup(self) -> None:
        """Release the lock and PID files; runs at most once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.lock.release()
        self.state = DaemonState.STOPPED
        self.logger.info("Daemon stopped")


class QueueDaemon:
    """
    Cron-driven processing of the job queue.

    Example:
        ```python
        config = SchedulerConfig.from_env()
        daemon = QueueDaemon(JobQueueService.from_pool(db_pool), config)
        exit_code = await daemon.run()
        ```
    """

    JOB_ID = "process_pending_jobs"
    HEALTH_JOB_ID = "health_check"

    def __init__(
        self,
        queue: JobQueueService,
        config: SchedulerConfig,
        registry: Optional[JobRegistry] = None,
        manager: Optional[ProcessManager] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue = queue
        self.config = config
        self.registry = registry or job_registry
        self.logger = logger or logging.getLogger(__name__)
        self.manager = manager or ProcessManager(config, logger=self.logger)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=config.timezone)
        self.retry_count = 0
        self._executing = False
        self._retry_handle: Optional[asyncio.TimerHandle] = None

    async def execute_job(self) -> Optional[BatchResult]:
        """
        One scheduled execution: process the queue under the timeout.

        Failures schedule another execution after ``retry_delay`` until
        ``max_retries`` is used up; the counter resets on success or when the
        budget is exhausted.
        """
        if not self.manager.accepting_work:
            self.logger.info("Shutdown in progress, skipping scheduled execution")
            return None
        if self._executing:
            self.logger.warning("Previous execution still running, skipping trigger")
            return None

        self._executing = True
        started = time.monotonic()
        self.logger.info("Starting scheduled queue processing")
        try:
            result = await self.manager.track(self._process_with_timeout())
        except asyncio.CancelledError:
            self.logger.warning("Scheduled execution cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Scheduled execution failed: {str(e)}", exc_info=True)
            self._schedule_retry()
            return None
        finally:
            self._executing = False

        self.retry_count = 0
        self.logger.info(
            f"Scheduled execution finished in {time.monotonic() - started:.1f}s: "
            f"{result.processed} processed, {result.successful} successful, "
            f"{result.failed} failed"
        )
        return result

    async def _process_with_timeout(self) -> BatchResult:
        try:
            return await asyncio.wait_for(
                self.queue.process_all_pending_jobs(
                    self.config.max_jobs_per_run,
                    should_continue=lambda: self.manager.accepting_work,
                ),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(self.config.timeout_seconds) from e

    def _schedule_retry(self) -> None:
        self.retry_count += 1
        if self.retry_count > self.config.max_retries:
            self.logger.error(
                f"Execution failed after {self.config.max_retries} retries, "
                f"waiting for the next scheduled run"
            )
            self.retry_count = 0
            return

        if not self.manager.accepting_work:
            return

        self.logger.warning(
            f"Retrying execution ({self.retry_count}/{self.config.max_retries}) "
            f"in {self.config.retry_delay_seconds}s"
        )
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(
            self.config.retry_delay_seconds, self._launch_retry
        )

    def _launch_retry(self) -> None:
        self._retry_handle = None
        if self.manager.accepting_work:
            asyncio.ensure_future(self.execute_job())

    async def enqueue_periodic(self, job_type: JobType) -> Optional[UUID]:
        """Enqueue one periodic job; failures are logged and left to the next trigger."""
        if not self.manager.accepting_work:
            self.logger.info(f"Shutdown in progress, not enqueueing {job_type.value}")
            return None

        try:
            job_id = await self.manager.track(self._produce(job_type))
        except Exception as e:
            self.logger.error(
                f"Failed to enqueue periodic {job_type.value} job: {str(e)}", exc_info=True
            )
            return None

        self.logger.info(f"Enqueued periodic {job_type.value} job {job_id}")
        return job_id

    def _produce(self, job_type: JobType) -> Awaitable[UUID]:
        if job_type == JobType.INGEST_EXTERNAL_LISTINGS:
            return self.queue.queue_listing_ingest()
        if job_type == JobType.SEND_WEEKLY_DIGEST:
            return self.queue.queue_weekly_digest()
        if job_type == JobType.CLEANUP_EXPIRED_RECORDS:
            return self.queue.queue_cleanup(days_old=self.config.cleanup_days_old)
        raise ValueError(f"No periodic producer for {job_type.value}")

    def _add_producers(self) -> None:
        for job_type, schedule in self.config.producer_schedules().items():
            self.scheduler.add_job(
                self.enqueue_periodic,
                trigger=self.config.trigger_for(schedule),
                args=[job_type],
                id=f"enqueue_{job_type.value}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.logger.info(f"Periodic {job_type.value} enqueued on {schedule!r}")

    def _handle_loop_exception(self, loop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None:
            loop.default_exception_handler(context)
            return
        self.manager.emergency_shutdown(error)

    def _stop_triggers(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def run(self) -> int:
        """
        Run until shutdown is requested and return the process exit code.

        Returns:
            0 on clean shutdown or when disabled, 1 when the lock is held, on
            emergency shutdown, or when a second signal forced the exit
        """
        if not self.config.enabled:
            self.logger.info("Scheduler is disabled, exiting")
            return EXIT_OK

        self.registry.require_complete()

        try:
            self.manager.lock.acquire()
        except LockAcquisitionError as e:
            self.logger.warning(f"{e}, aborting startup")
            return EXIT_FAILURE

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

        try:
            self.scheduler.add_job(
                self.execute_job,
                trigger=self.config.cron_trigger(),
                id=self.JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.scheduler.add_job(
                self.manager.health_check,
                trigger="interval",
                seconds=self.config.health_check_interval_seconds,
                id=self.HEALTH_JOB_ID,
                replace_existing=True,
            )
            self._add_producers()
            self.scheduler.start()
            self.manager.state = DaemonState.RUNNING

            next_run = self.scheduler.get_job(self.JOB_ID).next_run_time
            self.logger.info(
                f"Scheduler running with schedule {self.config.schedule!r} "
                f"({self.config.timezone}), next run at {next_run}"
            )

            await self.manager.wait_for_shutdown()
            return await self._shutdown()
        except Exception as e:
            self.manager.emergency_shutdown(e)
            self._stop_triggers()
            return EXIT_FAILURE
        finally:
            self.manager.cleanup()

    async def _shutdown(self) -> int:
        self.logger.info("Stopping scheduler")
        self._stop_triggers()

        if self.manager.emergency:
            await self.manager.cancel_active()
            return EXIT_FAILURE

        drained = await self.manager.drain()
        if drained:
            self.logger.info("All active operations finished")
        return self.manager.exit_code

    async def run_once(self) -> int:
        """Run a single execution with the lock held, then clean up."""
        self.registry.require_complete()

        try:
            self.manager.lock.acquire()
        except LockAcquisitionError as e:
            self.logger.warning(f"{e}, aborting run")
            return EXIT_FAILURE

        self.manager.state = DaemonState.RUNNING
        try:
            result = await self.manager.track(self._process_with_timeout())
        except Exception as e:
            self.logger.error(f"Execution failed: {str(e)}", exc_info=True)
            return EXIT_FAILURE
        finally:
            self.manager.cleanup()

        self.logger.info(f"Run complete: {result.to_dict()}")
        return EXIT_OK


def daemon_status(
    config: SchedulerConfig,
    lock: Optional[LockFile] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Describe the daemon without starting it: who holds the lock and when
    every cron trigger fires next.
    """
    lock = lock or LockFile(config.lock_file, config.pid_file)
    recorded_pid = lock.read_pid()
    holder = lock.holder()
    now = now or datetime.now(tz.gettz(config.timezone))

    schedules = {QueueDaemon.JOB_ID: config.schedule}
    for job_type, schedule in config.producer_schedules().items():
        schedules[f"enqueue_{job_type.value}"] = schedule

    next_runs = {}
    for name, schedule in schedules.items():
        next_run = config.trigger_for(schedule).get_next_fire_time(None, now)
        next_runs[name] = next_run.isoformat() if next_run and config.enabled else None

    return {
        "enabled": config.enabled,
        "running": holder is not None,
        "pid": holder,
        "stale_lock": recorded_pid is not None and holder is None,
        "lock_file": config.lock_file,
        "timezone": config.timezone,
        "schedules": schedules,
        "next_runs": next_runs,
    }
