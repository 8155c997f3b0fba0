"""
errors.py -- Error taxonomy for the housing market simulator.

Every error a participant can trigger derives from SimulationError so the
server can turn it into an `error {message}` frame for the offending
connection only.
"""


class SimulationError(Exception):
    """Base class for participant-facing errors."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def __str__(self) -> str:
        return self.message


class ProtocolError(SimulationError):
    """Malformed envelope or unknown message type."""


class AuthRequiredError(SimulationError):
    """Message requires an authenticated (or joined) connection."""


class ValidationError(SimulationError):
    """Bad action parameters, role, or session selector."""


class SessionNotFoundError(ValidationError):
    """Requested session id does not exist in the record sink."""

    def __init__(self, session_id=None):
        super().__init__("Session not found")
        self.session_id = session_id


class StorageError(SimulationError):
    """Record sink call failed."""

    def __init__(self, message: str = "", *, operation: str = ""):
        super().__init__(message or "storage failure")
        self.operation = operation
