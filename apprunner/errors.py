"""Error taxonomy shared by the registry, build orchestrator and stats store.

Every error carries the HTTP status it maps to at the API boundary:

>>> InvalidInput("bad id").status_code
400
>>> Conflict("busy").code
'CONFLICT'
"""

from typing import Optional


class RunnerError(Exception):
    """Base class for errors that are reported to API clients."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict:
        """Structured ``{error, details?, code}`` body.

        >>> NotFound("Project not found").to_body()
        {'error': 'Project not found', 'code': 'NOT_FOUND'}
        """
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(RunnerError):
    status_code = 400
    code = "INVALID_INPUT"


class NotFound(RunnerError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(RunnerError):
    status_code = 409
    code = "CONFLICT"


class BuildFailed(RunnerError):
    status_code = 500
    code = "BUILD_FAILED"


class PersistenceError(RunnerError):
    status_code = 500
    code = "PERSISTENCE_ERROR"
