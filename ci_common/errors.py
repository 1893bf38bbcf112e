"""
Error taxonomy for the build orchestration core.

Every error carries enough context (repository, build, job, operation)
for callers to log or display it.
"""


class CIError(Exception):
    """Base class for errors raised by the CI core."""

    def __init__(
        self,
        message: str,
        *,
        repository_id: str | None = None,
        build_id: str | None = None,
        job_id: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.repository_id = repository_id
        self.build_id = build_id
        self.job_id = job_id
        self.operation = operation

    @property
    def context(self) -> dict[str, str]:
        """Non-empty context fields, for structured logging."""
        fields = {
            "repository_id": self.repository_id,
            "build_id": self.build_id,
            "job_id": self.job_id,
            "operation": self.operation,
        }
        return {key: value for key, value in fields.items() if value is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class AllocationConflict(CIError):
    """Two writers raced for the same build number. Retryable."""


class InvariantViolation(CIError):
    """An upstream job-state feed produced an impossible lifecycle."""


class DecryptionFailure(CIError):
    """A secure value could not be decrypted with the repository key."""


class NotFound(CIError):
    """A requested repository, build or job does not exist."""


class LegacyFormatWarning(UserWarning):
    """Stored config had to be deserialized from its legacy string form."""


class NotificationWarning(UserWarning):
    """A lifecycle event could not be delivered; the transition still happened."""
