class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class AlreadySubmittedError(RepositoryConflictError):
    """Raised when an indicator period has already been submitted."""

    def __init__(self, period: str) -> None:
        super().__init__(f"indicator period {period} already submitted")
        self.period = period


class ReconciliationAbortError(Exception):
    """Raised when a reconciliation run aborts mid-stream."""
