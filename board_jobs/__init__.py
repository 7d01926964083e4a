"""Background job processing for the job board: queue, scheduler daemon and listing harvester."""

from board_jobs.config import BoardJobsConfig, FetcherConfig, SchedulerConfig
from board_jobs.daemon import DaemonState, LockFile, ProcessManager, QueueDaemon
from board_jobs.ddl import DELIVERY_LOG_DDL, QUEUE_TABLE_DDL
from board_jobs.errors import (
    AuthTokenError,
    BoardJobsError,
    ConfigurationError,
    ExecutionTimeoutError,
    JobNotFoundError,
    LockAcquisitionError,
    PayloadValidationError,
    RateLimitExceededError,
    RemoteHttpError,
)
from board_jobs.fetcher import HarvestResult, ListingFetcher, PartitionReport
from board_jobs.models import (
    BatchResult,
    ExternalListingRecord,
    HandlerResult,
    JobStatus,
    JobType,
    QueueJob,
    QueueStats,
)
from board_jobs.registry import JobRegistry, job_registry
from board_jobs.service import JobQueueService
from board_jobs.store import JobStore

__version__ = "0.1.0"

__all__ = [
    "BoardJobsConfig",
    "FetcherConfig",
    "SchedulerConfig",
    "DaemonState",
    "LockFile",
    "ProcessManager",
    "QueueDaemon",
    "DELIVERY_LOG_DDL",
    "QUEUE_TABLE_DDL",
    "AuthTokenError",
    "BoardJobsError",
    "ConfigurationError",
    "ExecutionTimeoutError",
    "JobNotFoundError",
    "LockAcquisitionError",
    "PayloadValidationError",
    "RateLimitExceededError",
    "RemoteHttpError",
    "HarvestResult",
    "ListingFetcher",
    "PartitionReport",
    "BatchResult",
    "ExternalListingRecord",
    "HandlerResult",
    "JobStatus",
    "JobType",
    "QueueJob",
    "QueueStats",
    "JobRegistry",
    "job_registry",
    "JobQueueService",
    "JobStore",
]
