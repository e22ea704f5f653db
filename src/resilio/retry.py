"""Retry policy: exponential backoff with jitter and per-kind ceilings.

Delays grow as ``base * multiplier ** (attempt - 1)`` scaled by a per-kind
factor, perturbed by up to ``jitter_fraction`` in either direction, and
clamped to ``[0, max_delay]``. Each kind also carries an attempt cap and a
total elapsed-time budget; kinds where retrying cannot help are never retried.
"""

import random
from typing import Dict, Optional

from pydantic import BaseModel, Field

from resilio.classification import ErrorKind
from resilio.logging import get_logger

logger = get_logger(__name__, component="retry")


class KindRetryRule(BaseModel):
    """Retry limits for a single error kind."""

    model_config = {"extra": "forbid"}

    retryable: bool = Field(default=True, description="Whether this kind may be retried at all")
    delay_multiplier: float = Field(default=1.0, ge=0.0, description="Scales the global base delay")
    max_retries: int = Field(default=3, ge=0, description="Retries allowed after the first attempt")
    max_elapsed_ms: int = Field(default=30_000, ge=0, description="Total retry budget in milliseconds")
    base_delay_ms: Optional[int] = Field(default=None, ge=0, description="Overrides the global base delay")
    max_delay_ms: Optional[int] = Field(default=None, ge=0, description="Overrides the global delay cap")


def _never_retry(delay_multiplier: float = 1.0, base_delay_ms: Optional[int] = None) -> KindRetryRule:
    return KindRetryRule(
        retryable=False,
        delay_multiplier=delay_multiplier,
        max_retries=0,
        max_elapsed_ms=0,
        base_delay_ms=base_delay_ms,
    )


DEFAULT_KIND_RULES: Dict[ErrorKind, KindRetryRule] = {
    ErrorKind.NETWORK: KindRetryRule(delay_multiplier=1.0, max_retries=3, max_elapsed_ms=30_000),
    ErrorKind.SERVICE_UNAVAILABLE: KindRetryRule(delay_multiplier=2.0, max_retries=5, max_elapsed_ms=120_000),
    ErrorKind.SERVICE_MAINTENANCE: KindRetryRule(delay_multiplier=3.0, max_retries=5, max_elapsed_ms=300_000),
    ErrorKind.RATE_LIMITED: KindRetryRule(delay_multiplier=1.5, max_retries=2, max_elapsed_ms=60_000),
    ErrorKind.SERVER_ERROR: KindRetryRule(delay_multiplier=1.2, max_retries=3, max_elapsed_ms=45_000),
    ErrorKind.OAUTH_TIMEOUT: KindRetryRule(delay_multiplier=0.8, max_retries=2, max_elapsed_ms=20_000),
    ErrorKind.OAUTH_POPUP_BLOCKED: KindRetryRule(delay_multiplier=1.0, max_retries=1, max_elapsed_ms=10_000),
    ErrorKind.UNKNOWN: KindRetryRule(delay_multiplier=1.0, max_retries=1, max_elapsed_ms=30_000),
    ErrorKind.INVALID_CREDENTIALS: _never_retry(delay_multiplier=0.5),
    ErrorKind.OAUTH_ACCESS_DENIED: _never_retry(),
    ErrorKind.OAUTH_CONFIG_ERROR: _never_retry(),
    # Pure input validation: nothing to wait for.
    ErrorKind.NOT_FOUND: _never_retry(base_delay_ms=0),
    ErrorKind.ALREADY_EXISTS: _never_retry(base_delay_ms=0),
    ErrorKind.WEAK_INPUT: _never_retry(base_delay_ms=0),
    ErrorKind.EMAIL_UNCONFIRMED: _never_retry(base_delay_ms=0),
}

NON_RETRYABLE_KINDS = frozenset(
    kind for kind, rule in DEFAULT_KIND_RULES.items() if not rule.retryable
)


class RetryConfig(BaseModel):
    """Configuration for retry behavior."""

    model_config = {"extra": "forbid"}

    base_delay_ms: int = Field(default=100, ge=0, description="Base delay in milliseconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    max_delay_ms: int = Field(default=30_000, ge=0, description="Maximum delay in milliseconds")
    jitter_fraction: float = Field(default=0.1, ge=0.0, le=1.0, description="Jitter ratio (0-1)")
    per_kind: Dict[ErrorKind, KindRetryRule] = Field(
        default_factory=dict,
        description="Per-kind overrides merged over the built-in rules",
    )


class RetryDecision(BaseModel):
    """Outcome of consulting the policy after a failed attempt."""

    should_retry: bool
    delay_ms: int = Field(ge=0)


class RetryAttempt(BaseModel):
    """Record of one failed attempt and the decision taken for it."""

    operation_id: str
    kind: ErrorKind
    attempt_number: int = Field(ge=1)
    elapsed_ms: float = Field(ge=0)
    decision: RetryDecision


class RetryPolicy:
    """Decides whether and when a failed attempt should be retried.

    Args:
        config: Global backoff parameters and per-kind overrides.
        rng: Source of jitter; inject a seeded ``random.Random`` for
            reproducible delays.
    """

    def __init__(self, config: Optional[RetryConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or RetryConfig()
        self.rules: Dict[ErrorKind, KindRetryRule] = {**DEFAULT_KIND_RULES, **self.config.per_kind}
        self._rng = rng or random.Random()
        self._last_attempt: Dict[str, int] = {}

    def rule_for(self, kind: ErrorKind) -> KindRetryRule:
        return self.rules.get(kind, self.rules[ErrorKind.UNKNOWN])

    def max_delay_for(self, kind: ErrorKind) -> int:
        rule = self.rule_for(kind)
        if rule.max_delay_ms is not None:
            return min(rule.max_delay_ms, self.config.max_delay_ms)
        return self.config.max_delay_ms

    def next_delay(self, kind: ErrorKind, attempt_number: int, jitter: bool = True) -> int:
        """Delay in milliseconds before the retry following ``attempt_number``.

        Args:
            kind: Classified kind of the failure.
            attempt_number: The attempt that just failed (1 = first call).
            jitter: Apply random jitter; disable for deterministic bounds.

        Raises:
            ValueError: If ``attempt_number`` is below 1.
        """
        if attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

        rule = self.rule_for(kind)
        base = self.config.base_delay_ms if rule.base_delay_ms is None else rule.base_delay_ms
        cap = self.max_delay_for(kind)
        if base == 0:
            return 0

        # Exponent is bounded so huge attempt numbers cannot overflow floats.
        exponent = min(attempt_number - 1, 64)
        delay = min(base * rule.delay_multiplier * self.config.backoff_multiplier ** exponent, cap)

        if jitter and self.config.jitter_fraction > 0:
            spread = delay * self.config.jitter_fraction
            delay += self._rng.uniform(-spread, spread)

        return int(round(min(max(0.0, delay), cap)))

    def should_retry(self, kind: ErrorKind, attempt_number: int, elapsed_ms: float) -> bool:
        """Whether another attempt is allowed after ``attempt_number`` failed."""
        if attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

        rule = self.rule_for(kind)
        if not rule.retryable:
            return False
        if attempt_number > rule.max_retries:
            return False
        return elapsed_ms <= rule.max_elapsed_ms

    def decide(self, kind: ErrorKind, attempt_number: int, elapsed_ms: float) -> RetryDecision:
        if not self.should_retry(kind, attempt_number, elapsed_ms):
            return RetryDecision(should_retry=False, delay_ms=0)
        return RetryDecision(should_retry=True, delay_ms=self.next_delay(kind, attempt_number))

    def record(
        self,
        operation_id: str,
        kind: ErrorKind,
        attempt_number: int,
        elapsed_ms: float,
    ) -> RetryAttempt:
        """Decide for a failed attempt of a tracked operation.

        Raises:
            ValueError: If ``attempt_number`` does not increase for the operation.
        """
        previous = self._last_attempt.get(operation_id, 0)
        if attempt_number <= previous:
            raise ValueError(
                f"attempt_number for {operation_id} must increase (got {attempt_number} after {previous})"
            )
        decision = self.decide(kind, attempt_number, elapsed_ms)
        self._last_attempt[operation_id] = attempt_number

        logger.debug(
            "retry_decided",
            operation_id=operation_id,
            kind=kind.value,
            attempt=attempt_number,
            elapsed_ms=round(elapsed_ms, 1),
            should_retry=decision.should_retry,
            delay_ms=decision.delay_ms,
        )
        return RetryAttempt(
            operation_id=operation_id,
            kind=kind,
            attempt_number=attempt_number,
            elapsed_ms=max(0.0, elapsed_ms),
            decision=decision,
        )

    def forget(self, operation_id: str) -> None:
        """Stop tracking an operation once it has finished."""
        self._last_attempt.pop(operation_id, None)
