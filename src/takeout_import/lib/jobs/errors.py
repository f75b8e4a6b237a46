"""Error taxonomy for worker import jobs."""


class ImportJobError(Exception):
    """Base class for import-job errors."""


class ConfigurationError(ImportJobError):
    """A prerequisite (Drive connection, OAuth app, server URL, Fly token) is missing."""


class AuthenticationError(ImportJobError):
    """A webhook signature is missing, malformed, or does not match."""


class NotFoundError(ImportJobError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Import job not found: {job_id}")


class InvalidTransitionError(ImportJobError):
    """A status change that the job state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid job status transition: {current} -> {target}")


class CleanupError(ImportJobError):
    """One teardown step failed.

    Only ever raised and caught inside the cleanup routine; it carries the
    step name so the failure can be logged and put on the timeline.

    Args:
        step: Name of the failing step (e.g. "destroy_machine").
        message: Human-readable error description.
    """

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")
