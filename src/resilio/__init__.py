"""Resilio: resilient execution of fallible network operations.

Wraps network and auth calls with error classification, bounded retry,
offline queuing, service availability tracking and rolling-window alerting.
"""

__version__ = "0.1.0"

# Logging exports
from resilio.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Core exports
from resilio.alerts import Alert, AlertDispatcher, AlertSeverity, AlertType
from resilio.analytics import AnalyticsAggregator, AnalyticsEvent, WindowStats
from resilio.availability import AvailabilityMonitor, ProbeResult, ServiceStatus
from resilio.cache import CachedClassifier, ClassificationCache
from resilio.classification import ErrorClassifier, ErrorKind, ErrorShape
from resilio.engine import FailureInfo, ResilientEngine
from resilio.escalation import EscalationConfig, EscalationManager
from resilio.errors import (
    ConfigurationError,
    DuplicateOperationError,
    ProbeTimeoutError,
    QueueClearedError,
    QueueFullError,
    ResilioError,
)
from resilio.events import (
    AlertAcknowledgedEvent,
    AlertTriggeredEvent,
    EventBus,
    QueueDrainedEvent,
    RetryScheduledEvent,
    ServiceLostEvent,
    ServiceRestoredEvent,
    StatusChangeEvent,
)
from resilio.performance import OperationStats, PerformanceConfig, PerformanceTracker
from resilio.probes import HttpProbe
from resilio.queue import DrainResult, OperationQueue
from resilio.retry import RetryAttempt, RetryConfig, RetryDecision, RetryPolicy
from resilio.scheduling import AsyncioScheduler, VirtualScheduler

# Config exports
from resilio.config import EngineConfig, load_config

__all__ = [
    "__version__",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Engine
    "ResilientEngine",
    "FailureInfo",
    # Components
    "ErrorClassifier",
    "ErrorKind",
    "ErrorShape",
    "ClassificationCache",
    "CachedClassifier",
    "RetryPolicy",
    "RetryConfig",
    "RetryDecision",
    "RetryAttempt",
    "AvailabilityMonitor",
    "ProbeResult",
    "ServiceStatus",
    "HttpProbe",
    "OperationQueue",
    "DrainResult",
    "AnalyticsAggregator",
    "AnalyticsEvent",
    "WindowStats",
    "AlertDispatcher",
    "Alert",
    "AlertSeverity",
    "AlertType",
    "EscalationManager",
    "EscalationConfig",
    "PerformanceTracker",
    "PerformanceConfig",
    "OperationStats",
    # Events
    "EventBus",
    "StatusChangeEvent",
    "ServiceLostEvent",
    "ServiceRestoredEvent",
    "QueueDrainedEvent",
    "AlertTriggeredEvent",
    "AlertAcknowledgedEvent",
    "RetryScheduledEvent",
    # Scheduling
    "AsyncioScheduler",
    "VirtualScheduler",
    # Errors
    "ResilioError",
    "QueueFullError",
    "QueueClearedError",
    "DuplicateOperationError",
    "ProbeTimeoutError",
    "ConfigurationError",
    # Config
    "EngineConfig",
    "load_config",
]
