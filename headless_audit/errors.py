"""
Exception hierarchy for the audit service.

Each class maps to one failure category of a request:

    ValidationError          bad or missing input, the caller's fault (400)
    ResourceAllocationError  no port or the renderer failed to start (500)
    ExecutionError           the audit tool failed or its streams broke (500)
    CleanupError             teardown failed, logged and never surfaced
    Overloaded               admission queue is full (503)
"""

from typing import Optional


class AuditServiceError(Exception):
    """Base class for all errors raised by the audit pipeline."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(AuditServiceError):
    status_code = 400


class ResourceAllocationError(AuditServiceError):
    pass


class PortExhaustion(ResourceAllocationError):
    """Raised when the OS refuses to hand out a listening socket."""
    pass


class SpawnError(ResourceAllocationError):
    """Raised when the renderer's scratch dir or process cannot be created."""
    pass


class ExecutionError(AuditServiceError):
    """
    Raised when the audit subprocess fails.

    `stderr` holds whatever diagnostics the tool wrote before failing; it is
    already folded into the message so the HTTP layer can return it as is.
    """

    def __init__(self, message: str, stderr: bytes = b"", returncode: Optional[int] = None):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


class AuditTimeout(ExecutionError):
    def __init__(self, timeout_seconds: float, stderr: bytes = b""):
        self.timeout_seconds = timeout_seconds
        message = f"audit timed out after {timeout_seconds} seconds"
        if stderr:
            message = f"{message}: {stderr.decode('utf-8', 'replace')}"
        super().__init__(message, stderr=stderr)


class AuditCancelled(ExecutionError):
    pass


class CleanupError(AuditServiceError):
    pass


class Overloaded(AuditServiceError):
    status_code = 503
