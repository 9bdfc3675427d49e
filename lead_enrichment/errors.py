"""Domain exceptions for the enrichment pipeline.

Validation and configuration errors are raised to the caller before a job
exists. Provider, queue and scoring errors are recorded on the job and only
surface when the job is polled.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def __str__(self) -> str:
        if self.job_id:
            return f"[job {self.job_id}] {self.message}"
        return self.message


class ConfigurationError(PipelineError):
    """Required settings are missing or invalid (e.g. no database credentials)."""


class ValidationError(PipelineError):
    """Bad or empty input. No job is created."""


class ProfilesNotFoundError(ValidationError):
    """None of the requested profiles exist in the caller's organization."""


class NotConfiguredError(PipelineError):
    """No enrichment provider has credentials. Reported before job creation."""


class ProviderError(PipelineError):
    """Transport failure or provider-side rejection.

    retryable marks failures worth another attempt (timeouts, 429, 5xx).
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message, job_id)
        self.status_code = status_code
        self.retryable = retryable


class PartialDeliveryError(PipelineError):
    """Some submitted profiles came back without data. Informational only."""

    def __init__(self, message: str, job_id: Optional[str] = None, missing: Optional[list] = None):
        super().__init__(message, job_id)
        self.missing = list(missing or [])


class DeliveryPendingError(PipelineError):
    """The provider has not finished the submitted scrape yet."""


class JobBusyError(PipelineError):
    """Another worker holds the job right now. Check again later."""


class ScoringError(PipelineError):
    """Scoring one profile failed. Aggregated per job."""

    def __init__(self, message: str, job_id: Optional[str] = None, profile_id: Optional[int] = None):
        super().__init__(message, job_id)
        self.profile_id = profile_id


class QueueError(PipelineError):
    """The durable queue rejected a send/receive/ack."""


class JobNotFoundError(PipelineError):
    """No job with that id (or not visible to the organization)."""


class InvalidTransitionError(PipelineError):
    """Requested status change is not an edge of the job state machine."""


class StaleStateError(PipelineError):
    """Compare-and-swap lost: the job is no longer in the expected status."""

    def __init__(self, message: str, job_id: Optional[str] = None, current_status: Optional[str] = None):
        super().__init__(message, job_id)
        self.current_status = current_status
