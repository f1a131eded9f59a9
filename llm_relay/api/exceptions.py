"""Custom exception classes for the API and job state machine."""


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class JobNotFoundError(Exception):
    """Raised when a job id is unknown."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID '{job_id}' not found")


class DuplicateJobError(Exception):
    """Raised when a submission reuses an existing job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job with ID '{job_id}' already exists")


class JobStateError(Exception):
    """Base class for begin-processing refusals."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        self.message = message
        super().__init__(message)


class JobAlreadyCompletedError(JobStateError):
    """Job is completed. Callers treat this as a successful no-op."""

    def __init__(self, job_id: str):
        super().__init__(job_id, f"Job '{job_id}' already completed")


class JobAlreadyFailedError(JobStateError):
    """Job already failed. No-op."""

    def __init__(self, job_id: str, error: str | None = None):
        self.error = error
        super().__init__(job_id, f"Job '{job_id}' previously failed")


class JobBusyError(JobStateError):
    """Job is being processed and is not yet considered stuck."""

    def __init__(self, job_id: str, processing_seconds: float):
        self.processing_seconds = processing_seconds
        super().__init__(
            job_id,
            f"Job '{job_id}' is currently being processed "
            f"({round(processing_seconds)}s so far)",
        )


class JobNotCompletedError(JobStateError):
    """Receipt acknowledged for a job that has no result yet."""

    def __init__(self, job_id: str, status: str):
        self.status = status
        super().__init__(job_id, f"Job '{job_id}' is not completed (status: {status})")
