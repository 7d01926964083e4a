"""Exception types for the board jobs library."""


class BoardJobsError(Exception):
    """Base exception for all board jobs errors."""

    pass


class ConfigurationError(BoardJobsError):
    """Raised when configuration is missing or out of bounds."""

    pass


class JobNotFoundError(BoardJobsError):
    """Raised when a queue job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class PayloadValidationError(BoardJobsError):
    """Raised by a handler when its payload does not match the expected shape."""

    def __init__(self, job_type: str, message: str):
        self.job_type = job_type
        super().__init__(f"Invalid payload for {job_type}: {message}")


class LockAcquisitionError(BoardJobsError):
    """Raised when the singleton lock file is already held."""

    def __init__(self, lock_file: str, message: str = None):
        self.lock_file = lock_file
        if message is None:
            message = f"Lock file {lock_file} exists, another instance may be running"
        super().__init__(message)


class ExecutionTimeoutError(BoardJobsError):
    """Raised when a scheduled execution exceeds its timeout."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job execution timeout after {timeout_seconds}s")


class AuthTokenError(BoardJobsError):
    """Raised when authentication token is missing or invalid."""

    pass


class RemoteHttpError(BoardJobsError):
    """Raised when an HTTP request to a remote service fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")


class RateLimitExceededError(RemoteHttpError):
    """Raised when a request is still rate limited after all retries."""

    def __init__(self, url: str, attempts: int, response_body: str = None):
        self.url = url
        self.attempts = attempts
        super().__init__(
            status_code=429,
            message=f"Rate limited after {attempts} attempts: {url}",
            response_body=response_body,
        )
