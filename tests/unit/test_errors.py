"""Tests for the Resilio exception hierarchy."""

from resilio.errors import (
    ConfigurationError,
    DuplicateOperationError,
    ProbeTimeoutError,
    QueueClearedError,
    QueueFullError,
    ResilioError,
)


class TestResilioError:
    """Tests for the base exception."""

    def test_defaults(self):
        """The base error carries a default code and empty details."""
        error = ResilioError("boom")
        assert str(error) == "boom"
        assert error.code == "RESILIO_ERROR"
        assert error.details == {}

    def test_to_dict(self):
        """to_dict serializes type, code, details and timestamp."""
        data = ResilioError("boom", code="X", details={"a": 1}).to_dict()
        assert data["type"] == "ResilioError"
        assert data["code"] == "X"
        assert data["details"] == {"a": 1}
        assert "T" in data["timestamp"]


class TestSubclasses:
    """Tests for the concrete errors."""

    def test_queue_full(self):
        """QueueFullError records the capacity."""
        error = QueueFullError(50, {"operation_id": "op"})
        assert isinstance(error, ResilioError)
        assert error.code == "QUEUE_FULL"
        assert error.details == {"operation_id": "op", "capacity": 50}

    def test_queue_cleared(self):
        """QueueClearedError records the id and reason."""
        error = QueueClearedError("op-1", "engine closed")
        assert error.code == "QUEUE_CLEARED"
        assert error.operation_id == "op-1"
        assert "engine closed" in str(error)

    def test_duplicate_operation(self):
        """DuplicateOperationError records the id."""
        error = DuplicateOperationError("op-1")
        assert error.code == "DUPLICATE_OPERATION"
        assert error.operation_id == "op-1"
        assert error.details == {"operation_id": "op-1"}

    def test_probe_timeout(self):
        """ProbeTimeoutError records the timeout."""
        error = ProbeTimeoutError(10_000)
        assert error.details["timeout_ms"] == 10_000

    def test_configuration(self):
        """ConfigurationError uses its own code."""
        assert ConfigurationError("bad").code == "CONFIGURATION_ERROR"
