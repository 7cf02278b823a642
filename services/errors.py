class ABTestError(Exception):
    """Base exception for A/B testing domain errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidConfiguration(ABTestError):
    """Raised when variants or the traffic split are invalid."""
    pass


class InvalidTransition(ABTestError):
    """Raised on an illegal lifecycle move or an edit to a non-draft test."""
    pass


class NotFound(ABTestError):
    """Raised when a test id is unknown."""
    status_code = 404


class TestNotRunning(ABTestError):
    """Raised when an assignment is requested for a test that is not running."""
    status_code = 404
    # keep pytest from collecting this as a test class
    __test__ = False


class AssignmentNotFound(ABTestError):
    """Raised when a conversion is recorded for a session with no assignment."""
    pass


class UnsupportedExportFormat(ABTestError):
    """Raised when an export format has no writer."""
    pass
