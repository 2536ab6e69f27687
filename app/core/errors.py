"""
Fleet ops exceptions.

Overlap skips are not errors; the scheduler reports them as a trigger outcome.
"""


class FleetOpsError(Exception):
    """Base exception for all fleet ops errors."""
    pass


class ValidationError(FleetOpsError):
    """
    Raised when input is rejected before any work happens.

    Examples:
    - period_start >= period_end
    - rev share outside [0, 1]
    - malformed cron expression or unknown export format
    """

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(FleetOpsError):
    """Raised when a requested job, device, owner or alert does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class DuplicateJobError(FleetOpsError):
    """Raised when registering a job name that is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Job already registered: {name}")


class TransientIOError(FleetOpsError):
    """
    Raised when the metric source or a store is unreachable.

    Never retried inside the same handler run; the next scheduled tick
    is the retry.
    """

    def __init__(self, target: str, cause: Exception | str | None = None):
        self.target = target
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{target} unavailable{detail}")
