"""Error classification for Resilio.

Maps any raw failure (exceptions, provider error payloads, bare strings, or
nothing at all) onto the closed :class:`ErrorKind` taxonomy. Classification is
an ordered rule table: the first rule whose predicate matches decides the
kind, so precedence can be read top to bottom.

Example:
    >>> classifier = ErrorClassifier()
    >>> classifier.classify({"status": 503})
    <ErrorKind.SERVICE_UNAVAILABLE: 'service_unavailable'>
    >>> classifier.classify(ConnectionRefusedError("connection refused"))
    <ErrorKind.NETWORK: 'network'>
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

import httpx

from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector

logger = get_logger(__name__, component="classification")


class ErrorKind(str, Enum):
    """Canonical classification of a failure."""

    NETWORK = "network"
    SERVICE_UNAVAILABLE = "service_unavailable"
    SERVICE_MAINTENANCE = "service_maintenance"
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    WEAK_INPUT = "weak_input"
    RATE_LIMITED = "rate_limited"
    EMAIL_UNCONFIRMED = "email_unconfirmed"
    OAUTH_ACCESS_DENIED = "oauth_access_denied"
    OAUTH_POPUP_BLOCKED = "oauth_popup_blocked"
    OAUTH_TIMEOUT = "oauth_timeout"
    OAUTH_CONFIG_ERROR = "oauth_config_error"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


# Kinds that indicate the remote service itself cannot be reached.
AVAILABILITY_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.SERVICE_MAINTENANCE}
)

_SEVERITY_BY_KIND = {
    ErrorKind.NETWORK: "high",
    ErrorKind.SERVICE_UNAVAILABLE: "high",
    ErrorKind.SERVICE_MAINTENANCE: "high",
    ErrorKind.SERVER_ERROR: "medium",
    ErrorKind.RATE_LIMITED: "medium",
    ErrorKind.OAUTH_TIMEOUT: "medium",
    ErrorKind.OAUTH_CONFIG_ERROR: "medium",
    ErrorKind.OAUTH_POPUP_BLOCKED: "low",
    ErrorKind.OAUTH_ACCESS_DENIED: "low",
    ErrorKind.INVALID_CREDENTIALS: "low",
    ErrorKind.NOT_FOUND: "low",
    ErrorKind.ALREADY_EXISTS: "low",
    ErrorKind.WEAK_INPUT: "low",
    ErrorKind.EMAIL_UNCONFIRMED: "low",
    ErrorKind.UNKNOWN: "medium",
}


def severity_for_kind(kind: ErrorKind) -> str:
    """Analytics severity (low, medium, high) for a kind."""
    return _SEVERITY_BY_KIND.get(kind, "medium")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def _status(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


@dataclass(frozen=True)
class ErrorShape:
    """Normalised view of a raw error.

    All text fields are lower-cased; ``status`` is an HTTP-like status code
    when one could be found.
    """

    name: str = ""
    code: str = ""
    status: Optional[int] = None
    message: str = ""

    @classmethod
    def from_error(cls, error: Any) -> "ErrorShape":
        """Extract a shape from anything. Never raises."""
        try:
            return cls._extract(error)
        except Exception as e:
            logger.debug("error_shape_extraction_failed", error_type=type(e).__name__)
            return cls(name=_safe_type_name(error))

    @classmethod
    def _extract(cls, error: Any) -> "ErrorShape":
        if error is None:
            return cls()
        if isinstance(error, ErrorShape):
            return error
        if isinstance(error, str):
            return cls(message=_text(error))
        if isinstance(error, Mapping):
            return cls(
                name=_text(error.get("name")),
                code=_text(error.get("code") or error.get("error_code") or error.get("error")),
                status=_status(
                    error.get("status") or error.get("status_code") or error.get("statusCode")
                ),
                message=_text(
                    error.get("message") or error.get("error_description") or error.get("msg")
                ),
            )
        if isinstance(error, httpx.HTTPStatusError):
            return cls(
                name=_text(type(error).__name__),
                status=error.response.status_code,
                message=_text(error),
            )
        status = getattr(error, "status", None)
        if status is None:
            status = getattr(error, "status_code", None)
        message = getattr(error, "message", None)
        if not isinstance(message, str) or not message:
            message = str(error)
        return cls(
            name=_text(type(error).__name__) if isinstance(error, BaseException) else _text(getattr(error, "name", "")),
            code=_text(getattr(error, "code", None)),
            status=_status(status),
            message=_text(message),
        )


def _safe_type_name(error: Any) -> str:
    return type(error).__name__.lower()


def _mentions(text: str, *phrases: str) -> bool:
    return any(phrase in text for phrase in phrases)


Predicate = Callable[[ErrorShape], bool]


@dataclass(frozen=True)
class ClassificationRule:
    """A named ``(predicate, kind)`` pair in the classification table."""

    name: str
    predicate: Predicate
    kind: ErrorKind

    def matches(self, shape: ErrorShape) -> bool:
        return self.predicate(shape)


def status_rule(status: int, kind: ErrorKind) -> ClassificationRule:
    return ClassificationRule(f"status_{status}", lambda s: s.status == status, kind)


def code_rule(kind: ErrorKind, *codes: str) -> ClassificationRule:
    code_set = frozenset(codes)
    return ClassificationRule(f"code_{kind.value}", lambda s: s.code in code_set, kind)


# ============================================================================
# Message heuristics
# ============================================================================

_INVALID_CREDENTIALS_RE = re.compile(r"invalid\b.*\bcredentials|(wrong|incorrect) password")


def _is_network(shape: ErrorShape) -> bool:
    if _mentions(shape.message, "oauth", "popup"):
        return False
    return _mentions(
        shape.message,
        "network",
        "failed to fetch",
        "connection",
        "timeout",
        "timed out",
        "econnrefused",
        "econnreset",
        "enotfound",
        "offline",
    ) or _mentions(shape.name, "timeout", "connect", "network")


def _is_invalid_credentials(shape: ErrorShape) -> bool:
    return bool(_INVALID_CREDENTIALS_RE.search(shape.message))


def _is_rate_limited(shape: ErrorShape) -> bool:
    return _mentions(shape.message, "rate limit", "too many requests", "too many attempts")


def _is_popup_blocked(shape: ErrorShape) -> bool:
    return "popup" in shape.message and _mentions(shape.message, "blocked", "closed")


def _is_access_denied(shape: ErrorShape) -> bool:
    return _mentions(shape.message, "access_denied", "access denied", "user denied", "denied")


def _is_oauth_timeout(shape: ErrorShape) -> bool:
    return _mentions(shape.message, "oauth", "popup") and _mentions(
        shape.message, "timeout", "timed out"
    )


def _is_oauth_config(shape: ErrorShape) -> bool:
    return _mentions(
        shape.message,
        "invalid_client",
        "client_id",
        "redirect_uri",
        "oauth configuration",
        "provider is not enabled",
        "unsupported provider",
    )


def _is_server_error(shape: ErrorShape) -> bool:
    if shape.status is not None and 500 <= shape.status < 600:
        return True
    return _mentions(shape.message, "internal server error", "server error", "bad gateway")


STATUS_RULES: Tuple[ClassificationRule, ...] = (
    status_rule(503, ErrorKind.SERVICE_UNAVAILABLE),
    status_rule(401, ErrorKind.INVALID_CREDENTIALS),
    status_rule(429, ErrorKind.RATE_LIMITED),
)

CODE_RULES: Tuple[ClassificationRule, ...] = (
    code_rule(ErrorKind.INVALID_CREDENTIALS, "invalid_credentials", "invalid_grant"),
    code_rule(ErrorKind.NOT_FOUND, "user_not_found"),
    code_rule(ErrorKind.ALREADY_EXISTS, "user_already_registered", "user_already_exists", "email_exists"),
    code_rule(ErrorKind.WEAK_INPUT, "weak_password", "validation_failed"),
    code_rule(ErrorKind.RATE_LIMITED, "too_many_requests", "over_request_rate_limit"),
    code_rule(ErrorKind.EMAIL_UNCONFIRMED, "email_not_confirmed"),
    code_rule(ErrorKind.NETWORK, "network_error", "econnrefused", "econnreset", "etimedout"),
    code_rule(ErrorKind.SERVICE_UNAVAILABLE, "service_unavailable"),
    code_rule(ErrorKind.OAUTH_ACCESS_DENIED, "access_denied"),
    code_rule(ErrorKind.OAUTH_POPUP_BLOCKED, "popup_blocked", "popup_closed_by_user"),
    code_rule(ErrorKind.OAUTH_CONFIG_ERROR, "invalid_client", "unauthorized_client"),
)

# The fast path may only use these when no provider code is present, which
# keeps it in agreement with the full table.
FAST_HEURISTIC_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("network_phrasing", _is_network, ErrorKind.NETWORK),
    ClassificationRule("invalid_credentials_phrasing", _is_invalid_credentials, ErrorKind.INVALID_CREDENTIALS),
    ClassificationRule("rate_limit_phrasing", _is_rate_limited, ErrorKind.RATE_LIMITED),
)

HEURISTIC_RULES: Tuple[ClassificationRule, ...] = FAST_HEURISTIC_RULES + (
    ClassificationRule("oauth_popup_blocked", _is_popup_blocked, ErrorKind.OAUTH_POPUP_BLOCKED),
    ClassificationRule("oauth_access_denied", _is_access_denied, ErrorKind.OAUTH_ACCESS_DENIED),
    ClassificationRule("oauth_timeout", _is_oauth_timeout, ErrorKind.OAUTH_TIMEOUT),
    ClassificationRule("oauth_config", _is_oauth_config, ErrorKind.OAUTH_CONFIG_ERROR),
    ClassificationRule(
        "maintenance_phrasing",
        lambda s: "maintenance" in s.message,
        ErrorKind.SERVICE_MAINTENANCE,
    ),
    ClassificationRule(
        "unavailable_phrasing",
        lambda s: _mentions(s.message, "unavailable", "temporarily down"),
        ErrorKind.SERVICE_UNAVAILABLE,
    ),
    ClassificationRule(
        "email_unconfirmed_phrasing",
        lambda s: _mentions(s.message, "email not confirmed", "not confirmed", "verify your email"),
        ErrorKind.EMAIL_UNCONFIRMED,
    ),
    ClassificationRule(
        "weak_input_phrasing",
        lambda s: _mentions(s.message, "weak password", "password should", "password must", "invalid email"),
        ErrorKind.WEAK_INPUT,
    ),
    ClassificationRule(
        "already_exists_phrasing",
        lambda s: _mentions(s.message, "already exists", "already registered", "already in use"),
        ErrorKind.ALREADY_EXISTS,
    ),
    ClassificationRule(
        "not_found_phrasing",
        lambda s: _mentions(s.message, "not found", "does not exist"),
        ErrorKind.NOT_FOUND,
    ),
    ClassificationRule("server_error", _is_server_error, ErrorKind.SERVER_ERROR),
)

DEFAULT_RULES: Tuple[ClassificationRule, ...] = STATUS_RULES + CODE_RULES + HEURISTIC_RULES


class ErrorClassifier:
    """Total, deterministic mapping from raw errors to :class:`ErrorKind`.

    Args:
        rules: Ordered rule table; defaults to :data:`DEFAULT_RULES`.
        use_fast_path: Try the status shortcuts and the most frequent
            phrasings before walking the full table.
    """

    def __init__(
        self,
        rules: Optional[Sequence[ClassificationRule]] = None,
        use_fast_path: bool = True,
    ):
        self.rules: Tuple[ClassificationRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES
        self.use_fast_path = use_fast_path and rules is None
        self._metrics = get_metrics_collector()

    def classify(self, error: Any) -> ErrorKind:
        """Classify an error. Never raises; unknown shapes map to UNKNOWN."""
        kind, _ = self.explain(error)
        return kind

    def explain(self, error: Any) -> Tuple[ErrorKind, str]:
        """Classify an error and report the name of the deciding rule."""
        shape = ErrorShape.from_error(error)
        rule = None
        if self.use_fast_path:
            rule = self._match_fast(shape)
        if rule is None:
            rule = self._match(shape, self.rules)

        kind = rule.kind if rule is not None else ErrorKind.UNKNOWN
        self._metrics.increment_classification(kind=kind.value)
        logger.debug(
            "error_classified",
            kind=kind.value,
            rule=rule.name if rule is not None else "default",
            status=shape.status,
            code=shape.code or None,
        )
        return kind, rule.name if rule is not None else "default"

    def fast_path(self, error: Any) -> Optional[ErrorKind]:
        """Cheap pre-check; ``None`` means the full table must decide."""
        rule = self._match_fast(ErrorShape.from_error(error))
        return rule.kind if rule is not None else None

    def classify_full(self, error: Any) -> ErrorKind:
        """Walk the complete rule table, skipping the fast path."""
        rule = self._match(ErrorShape.from_error(error), self.rules)
        return rule.kind if rule is not None else ErrorKind.UNKNOWN

    @staticmethod
    def _match_fast(shape: ErrorShape) -> Optional[ClassificationRule]:
        rule = ErrorClassifier._match(shape, STATUS_RULES)
        if rule is None and not shape.code:
            rule = ErrorClassifier._match(shape, FAST_HEURISTIC_RULES)
        return rule

    @staticmethod
    def _match(
        shape: ErrorShape, rules: Sequence[ClassificationRule]
    ) -> Optional[ClassificationRule]:
        for rule in rules:
            if rule.matches(shape):
                return rule
        return None


__all__ = [
    "ErrorKind",
    "ErrorShape",
    "ClassificationRule",
    "ErrorClassifier",
    "AVAILABILITY_KINDS",
    "DEFAULT_RULES",
    "STATUS_RULES",
    "CODE_RULES",
    "HEURISTIC_RULES",
    "FAST_HEURISTIC_RULES",
    "severity_for_kind",
    "status_rule",
    "code_rule",
]
