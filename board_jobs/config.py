"""Configuration for the board jobs queue, scheduler daemon and fetcher."""

import os
from typing import Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger
from dateutil import tz

from board_jobs.errors import ConfigurationError
from board_jobs.models import JobType

DEFAULT_PARTITIONS = [
    "Stockton, CA",
    "Modesto, CA",
    "Tracy, CA",
    "Manteca, CA",
    "Lodi, CA",
    "Turlock, CA",
    "Merced, CA",
    "Ceres, CA",
    "Patterson, CA",
    "Ripon, CA",
    "Oakdale, CA",
    "Riverbank, CA",
    "Los Banos, CA",
    "Atwater, CA",
    "Livingston, CA",
]

LOG_LEVELS = ("debug", "info", "warning", "error")

# Producers enqueue ahead of the default 02:00 processing run
DEFAULT_INGEST_SCHEDULE = "0 1 * * *"
DEFAULT_DIGEST_SCHEDULE = "45 1 * * 1"
DEFAULT_CLEANUP_SCHEDULE = "30 1 * * *"
DISABLED_SCHEDULE_VALUES = ("", "off", "none", "disabled")


def validate_number(name: str, value: str, minimum: int, maximum: int) -> int:
    """Parse an integer setting and check it lies within [minimum, maximum]."""
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid number for {name}: {value!r}. Must be between {minimum} and {maximum}"
        ) from e
    if number < minimum or number > maximum:
        raise ConfigurationError(
            f"Invalid number for {name}: {value}. Must be between {minimum} and {maximum}"
        )
    return number


def validate_timezone(name: str) -> str:
    """Check that ``name`` is a known IANA timezone."""
    if not name or tz.gettz(name) is None:
        raise ConfigurationError(f"Invalid timezone: {name!r}")
    return name


def validate_schedule(schedule: str, timezone: str) -> CronTrigger:
    """Parse a five-field crontab expression."""
    try:
        return CronTrigger.from_crontab(schedule, timezone=timezone)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid cron schedule {schedule!r}: {e}") from e


def validate_log_level(level: str) -> str:
    level = (level or "").lower()
    if level == "warn":
        level = "warning"
    if level not in LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log level: {level!r}. Must be one of: {', '.join(LOG_LEVELS)}"
        )
    return level


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def _optional_schedule(value: Optional[str]) -> Optional[str]:
    """A crontab expression, or None when the producer is switched off."""
    if value is None or value.strip().lower() in DISABLED_SCHEDULE_VALUES:
        return None
    return value.strip()


class SchedulerConfig:
    """Configuration object for the scheduler daemon."""

    def __init__(
        self,
        schedule: str = "0 2 * * *",
        timezone: str = "America/Los_Angeles",
        enabled: bool = True,
        max_retries: int = 3,
        retry_delay_ms: int = 60_000,
        timeout_ms: int = 1_800_000,
        health_check_interval_ms: int = 300_000,
        drain_timeout_ms: int = 30_000,
        max_jobs_per_run: int = 100,
        memory_warning_mb: int = 500,
        log_level: str = "info",
        pid_file: Optional[str] = None,
        lock_file: Optional[str] = None,
        ingest_schedule: Optional[str] = DEFAULT_INGEST_SCHEDULE,
        digest_schedule: Optional[str] = DEFAULT_DIGEST_SCHEDULE,
        cleanup_schedule: Optional[str] = DEFAULT_CLEANUP_SCHEDULE,
        cleanup_days_old: int = 90,
    ):
        self.schedule = schedule
        self.timezone = timezone
        self.enabled = enabled
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.timeout_ms = timeout_ms
        self.health_check_interval_ms = health_check_interval_ms
        self.drain_timeout_ms = drain_timeout_ms
        self.max_jobs_per_run = max_jobs_per_run
        self.memory_warning_mb = memory_warning_mb
        self.log_level = log_level
        self.pid_file = pid_file or os.path.join(os.getcwd(), "board-jobs.pid")
        self.lock_file = lock_file or os.path.join(os.getcwd(), "board-jobs.lock")
        self.ingest_schedule = ingest_schedule
        self.digest_schedule = digest_schedule
        self.cleanup_schedule = cleanup_schedule
        self.cleanup_days_old = cleanup_days_old

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        """Create config from environment variables, validating every value."""
        timezone = validate_timezone(
            os.getenv("BOARD_JOBS_TIMEZONE", "America/Los_Angeles")
        )
        config = cls(
            schedule=os.getenv("BOARD_JOBS_SCHEDULE", "0 2 * * *"),
            timezone=timezone,
            enabled=_parse_bool(os.getenv("BOARD_JOBS_ENABLED"), True),
            max_retries=validate_number(
                "BOARD_JOBS_MAX_RETRIES", os.getenv("BOARD_JOBS_MAX_RETRIES", "3"), 0, 10
            ),
            retry_delay_ms=validate_number(
                "BOARD_JOBS_RETRY_DELAY_MS",
                os.getenv("BOARD_JOBS_RETRY_DELAY_MS", "60000"),
                1_000,
                300_000,
            ),
            timeout_ms=validate_number(
                "BOARD_JOBS_TIMEOUT_MS",
                os.getenv("BOARD_JOBS_TIMEOUT_MS", "1800000"),
                60_000,
                3_600_000,
            ),
            health_check_interval_ms=validate_number(
                "BOARD_JOBS_HEALTH_INTERVAL_MS",
                os.getenv("BOARD_JOBS_HEALTH_INTERVAL_MS", "300000"),
                60_000,
                600_000,
            ),
            drain_timeout_ms=validate_number(
                "BOARD_JOBS_DRAIN_TIMEOUT_MS",
                os.getenv("BOARD_JOBS_DRAIN_TIMEOUT_MS", "30000"),
                1_000,
                300_000,
            ),
            max_jobs_per_run=validate_number(
                "BOARD_JOBS_MAX_JOBS_PER_RUN",
                os.getenv("BOARD_JOBS_MAX_JOBS_PER_RUN", "100"),
                1,
                10_000,
            ),
            memory_warning_mb=validate_number(
                "BOARD_JOBS_MEMORY_WARNING_MB",
                os.getenv("BOARD_JOBS_MEMORY_WARNING_MB", "500"),
                1,
                65_536,
            ),
            log_level=validate_log_level(os.getenv("BOARD_JOBS_LOG_LEVEL", "info")),
            pid_file=os.getenv("BOARD_JOBS_PID_FILE"),
            lock_file=os.getenv("BOARD_JOBS_LOCK_FILE"),
            ingest_schedule=_optional_schedule(
                os.getenv("BOARD_JOBS_INGEST_SCHEDULE", DEFAULT_INGEST_SCHEDULE)
            ),
            digest_schedule=_optional_schedule(
                os.getenv("BOARD_JOBS_DIGEST_SCHEDULE", DEFAULT_DIGEST_SCHEDULE)
            ),
            cleanup_schedule=_optional_schedule(
                os.getenv("BOARD_JOBS_CLEANUP_SCHEDULE", DEFAULT_CLEANUP_SCHEDULE)
            ),
            cleanup_days_old=validate_number(
                "BOARD_JOBS_CLEANUP_DAYS_OLD",
                os.getenv("BOARD_JOBS_CLEANUP_DAYS_OLD", "90"),
                1,
                3650,
            ),
        )
        config.cron_trigger()
        for schedule in config.producer_schedules().values():
            config.trigger_for(schedule)
        return config

    def cron_trigger(self) -> CronTrigger:
        """Build (and thereby validate) the cron trigger for this config."""
        return validate_schedule(self.schedule, self.timezone)

    def trigger_for(self, schedule: str) -> CronTrigger:
        return validate_schedule(schedule, self.timezone)

    def producer_schedules(self) -> Dict[JobType, str]:
        """Enabled periodic producers, keyed by the job type they enqueue."""
        schedules = {
            JobType.INGEST_EXTERNAL_LISTINGS: self.ingest_schedule,
            JobType.SEND_WEEKLY_DIGEST: self.digest_schedule,
            JobType.CLEANUP_EXPIRED_RECORDS: self.cleanup_schedule,
        }
        return {job_type: schedule for job_type, schedule in schedules.items() if schedule}

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def health_check_interval_seconds(self) -> float:
        return self.health_check_interval_ms / 1000

    @property
    def drain_timeout_seconds(self) -> float:
        return self.drain_timeout_ms / 1000


class FetcherConfig:
    """Configuration for the external listing API harvest."""

    def __init__(
        self,
        app_id: str,
        app_key: str,
        country: str = "us",
        base_url: str = "https://api.adzuna.com/v1/api/jobs",
        partitions: Optional[List[str]] = None,
        results_per_page: int = 50,
        max_concurrent: int = 5,
        max_retries: int = 5,
        max_pages: int = 100,
        initial_backoff_seconds: float = 1.0,
        request_timeout_seconds: float = 30.0,
        what: Optional[str] = None,
    ):
        self.app_id = app_id
        self.app_key = app_key
        self.country = country
        self.base_url = base_url.rstrip("/")
        self.partitions = list(partitions or DEFAULT_PARTITIONS)
        self.results_per_page = results_per_page
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.max_pages = max_pages
        self.initial_backoff_seconds = initial_backoff_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.what = what

    @classmethod
    def from_env(cls) -> "FetcherConfig":
        """Create config from environment variables."""
        app_id = os.getenv("ADZUNA_APP_ID")
        if not app_id:
            raise ConfigurationError("ADZUNA_APP_ID environment variable is required")

        app_key = os.getenv("ADZUNA_APP_KEY")
        if not app_key:
            raise ConfigurationError("ADZUNA_APP_KEY environment variable is required")

        partitions_str = os.getenv("ADZUNA_PARTITIONS")
        partitions = None
        if partitions_str:
            partitions = [p.strip() for p in partitions_str.split(";") if p.strip()]

        return cls(
            app_id=app_id,
            app_key=app_key,
            country=os.getenv("ADZUNA_COUNTRY", "us"),
            base_url=os.getenv("ADZUNA_BASE_URL", "https://api.adzuna.com/v1/api/jobs"),
            partitions=partitions,
            results_per_page=validate_number(
                "ADZUNA_RESULTS_PER_PAGE", os.getenv("ADZUNA_RESULTS_PER_PAGE", "50"), 1, 50
            ),
            max_concurrent=validate_number(
                "ADZUNA_MAX_CONCURRENT", os.getenv("ADZUNA_MAX_CONCURRENT", "5"), 1, 50
            ),
            max_retries=validate_number(
                "ADZUNA_MAX_RETRIES", os.getenv("ADZUNA_MAX_RETRIES", "5"), 0, 10
            ),
            max_pages=validate_number(
                "ADZUNA_MAX_PAGES", os.getenv("ADZUNA_MAX_PAGES", "100"), 1, 1000
            ),
            what=os.getenv("ADZUNA_WHAT") or None,
        )


class BoardJobsConfig:
    """Top-level configuration: database plus the collaborator endpoints."""

    def __init__(
        self,
        db_dsn: str,
        scheduler: Optional[SchedulerConfig] = None,
        fetcher: Optional[FetcherConfig] = None,
        embeddings_api_url: str = "https://api.openai.com/v1/embeddings",
        embeddings_api_key: Optional[str] = None,
        embeddings_model: str = "text-embedding-3-small",
        email_api_url: Optional[str] = None,
        email_api_key: Optional[str] = None,
        email_from: Optional[str] = None,
        enqueue_auth_token: Optional[str] = None,
    ):
        self.db_dsn = db_dsn
        self.scheduler = scheduler or SchedulerConfig()
        self.fetcher = fetcher
        self.embeddings_api_url = embeddings_api_url
        self.embeddings_api_key = embeddings_api_key
        self.embeddings_model = embeddings_model
        self.email_api_url = email_api_url
        self.email_api_key = email_api_key
        self.email_from = email_from
        self.enqueue_auth_token = enqueue_auth_token

    @classmethod
    def from_env(cls) -> "BoardJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("BOARD_JOBS_DB_DSN")
        if not db_dsn:
            raise ConfigurationError("BOARD_JOBS_DB_DSN environment variable is required")

        fetcher = None
        if os.getenv("ADZUNA_APP_ID") or os.getenv("ADZUNA_APP_KEY"):
            fetcher = FetcherConfig.from_env()

        return cls(
            db_dsn=db_dsn,
            scheduler=SchedulerConfig.from_env(),
            fetcher=fetcher,
            embeddings_api_url=os.getenv(
                "EMBEDDINGS_API_URL", "https://api.openai.com/v1/embeddings"
            ),
            embeddings_api_key=os.getenv("EMBEDDINGS_API_KEY"),
            embeddings_model=os.getenv("EMBEDDINGS_MODEL", "text-embedding-3-small"),
            email_api_url=os.getenv("EMAIL_API_URL"),
            email_api_key=os.getenv("EMAIL_API_KEY"),
            email_from=os.getenv("EMAIL_FROM"),
            enqueue_auth_token=os.getenv("BOARD_JOBS_ENQUEUE_AUTH_TOKEN"),
        )
