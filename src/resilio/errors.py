"""Exception hierarchy for Resilio.

Engine-level failures carry a stable ``code`` and structured ``details`` so
callers can tell queue capacity and cancellation apart from the failures of
the operations they submitted. Failures raised by caller operations are never
wrapped: the engine re-raises the last underlying error unchanged.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================================
# Exception Hierarchy
# ============================================================================


class ResilioError(Exception):
    """Base exception for all Resilio errors."""

    def __init__(
        self,
        message: str,
        code: str = "RESILIO_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class QueueFullError(ResilioError):
    """The operation queue is at capacity; the new request was rejected."""

    def __init__(self, capacity: int, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details["capacity"] = capacity
        super().__init__(
            f"Operation queue is full (capacity {capacity})",
            code="QUEUE_FULL",
            details=details,
        )
        self.capacity = capacity


class QueueClearedError(ResilioError):
    """A pending operation was discarded before it could run."""

    def __init__(self, operation_id: str, reason: str = "queue cleared"):
        super().__init__(
            f"Queued operation {operation_id} cancelled: {reason}",
            code="QUEUE_CLEARED",
            details={"operation_id": operation_id, "reason": reason},
        )
        self.operation_id = operation_id
        self.reason = reason


class DuplicateOperationError(ResilioError):
    """An operation with the same id is already waiting in the queue."""

    def __init__(self, operation_id: str):
        super().__init__(
            f"Operation {operation_id} is already queued",
            code="DUPLICATE_OPERATION",
            details={"operation_id": operation_id},
        )
        self.operation_id = operation_id


class ProbeTimeoutError(ResilioError):
    """An availability probe did not complete within its timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            f"Availability probe timed out after {timeout_ms}ms",
            code="PROBE_TIMEOUT",
            details={"timeout_ms": timeout_ms},
        )
        self.timeout_ms = timeout_ms


class ConfigurationError(ResilioError):
    """Invalid or unreadable engine configuration."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


__all__ = [
    "ResilioError",
    "QueueFullError",
    "QueueClearedError",
    "DuplicateOperationError",
    "ProbeTimeoutError",
    "ConfigurationError",
]
