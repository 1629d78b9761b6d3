"""
Exceptions raised by the space migration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- RecordNotFoundError
    +-- RecordAlreadyExistsError
    +-- LedgerStateError
    |   +-- ClaimConflictError
    |   +-- NotOwnerError
    |   +-- InvalidStatusTransitionError
    |   +-- InvalidProgressError
    +-- ResolutionError
    |   +-- IndexingServiceUnavailableError
    |   +-- ResolutionDegradedError
    +-- VerificationIncompleteError
    +-- ProviderAttributionConflictError

    ClaimsServiceError is raised by claims-service clients at the network
    boundary. It is not a MigrationError; the claim resolver translates it.

Error Classification:
    Every MigrationError exposes an ErrorClassification carrying severity,
    recoverability, a stable error code and a suggested operator action.
    Transient errors also carry a RetryConfig used by callers that own the
    retry budget.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: System-level failure requiring immediate attention.
        ERROR: Failure of a single space that an operator should triage.
        WARNING: Condition worth monitoring that does not fail the record.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The worker recovers locally, usually by abandoning the
            space and going back to work acquisition.
        TRANSIENT: Temporary failure that may resolve on retry.
        FATAL: The record cannot make progress without operator action.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=3, base_delay_ms=200)
        >>> config.get_delay_ms(attempt=2)  # ~800ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 500.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate the delay before the given retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


RESOLVER_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=500.0,
    max_delay_ms=10000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata attached to every MigrationError subclass.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Stable code for programmatic handling.
        category: Grouping for related errors.
        suggested_action: Guidance for operators.
        retry_config: Backoff settings for transient errors.
        metrics_labels: Extra labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigrationError(Exception):
    """
    Base exception for all space migration errors.

    Attributes:
        message: Human-readable error description.
        customer: Customer DID involved, if applicable.
        space: Space DID involved, if applicable.
        suggested_action: Override for the classification's suggested action.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review worker logs for the affected space",
    )

    def __init__(
        self,
        message: str,
        *,
        customer: str | None = None,
        space: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.customer = customer
        self.space = space
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.customer:
            parts.append(f"customer={self.customer}")
        if self.space:
            parts.append(f"space={self.space}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "customer": self.customer,
            "space": self.space,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class RecordNotFoundError(MigrationError):
    """Raised when no migration record exists for (customer, space)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RECORD_NOT_FOUND",
        category="lookup",
        suggested_action="Create the migration record before claiming it",
    )

    def __init__(self, customer: str, space: str) -> None:
        super().__init__(
            f"Migration record not found: {customer}/{space}",
            customer=customer,
            space=space,
        )


class RecordAlreadyExistsError(MigrationError):
    """
    Raised by ``create`` when a record for (customer, space) already exists.

    Idempotent seeding code should catch this and move on.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECORD_ALREADY_EXISTS",
        category="lookup",
        suggested_action="Tolerate the error when seeding records idempotently",
    )

    def __init__(self, customer: str, space: str) -> None:
        super().__init__(
            f"Migration record already exists: {customer}/{space}",
            customer=customer,
            space=space,
        )


class LedgerStateError(MigrationError):
    """
    Base class for conditional-write failures.

    Raised after a compare-and-set write did not apply. ``current_status``
    is the status observed when the failure was diagnosed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="LEDGER_STATE_ERROR",
        category="state",
        suggested_action="Abandon the space and return to work acquisition",
    )

    def __init__(
        self,
        message: str,
        *,
        customer: str,
        space: str,
        current_status: Any = None,
    ) -> None:
        self.current_status = current_status
        super().__init__(message, customer=customer, space=space)


class ClaimConflictError(LedgerStateError):
    """
    Raised when a claim race was lost.

    The record is either owned by a live worker or already completed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLAIM_CONFLICT",
        category="ownership",
        suggested_action="Skip the space; another worker owns it",
    )

    def __init__(
        self,
        customer: str,
        space: str,
        current_status: Any = None,
        owner: tuple[str | None, str | None] | None = None,
    ) -> None:
        self.owner = owner
        status = getattr(current_status, "value", current_status)
        message = f"Cannot claim record in status {status!r}"
        if owner and any(owner):
            message += f" (owned by {owner[0]}/{owner[1]})"
        super().__init__(message, customer=customer, space=space, current_status=current_status)


class NotOwnerError(LedgerStateError):
    """Raised when the caller lost its claim, e.g. after a stale reclaim."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="NOT_OWNER",
        category="ownership",
        suggested_action="Stop processing the space; it was reclaimed",
    )

    def __init__(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
        current_status: Any = None,
        owner: tuple[str | None, str | None] | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.worker_id = worker_id
        self.owner = owner
        status = getattr(current_status, "value", current_status)
        message = f"Worker {instance_id}/{worker_id} does not own the record (status {status!r}"
        if owner and any(owner):
            message += f", owner {owner[0]}/{owner[1]}"
        message += ")"
        super().__init__(message, customer=customer, space=space, current_status=current_status)


class InvalidStatusTransitionError(LedgerStateError):
    """Raised when a terminal or otherwise illegal status change is requested."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATUS_TRANSITION",
        category="state",
        suggested_action="Check the record status before calling this operation",
    )

    def __init__(self, customer: str, space: str, from_status: Any, to_status: Any) -> None:
        self.from_status = from_status
        self.to_status = to_status
        src = getattr(from_status, "value", from_status)
        dst = getattr(to_status, "value", to_status)
        super().__init__(
            f"Invalid status transition: {src} -> {dst}",
            customer=customer,
            space=space,
            current_status=from_status,
        )


class InvalidProgressError(LedgerStateError):
    """Raised when a progress write would regress or overrun the upload counters."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PROGRESS",
        category="state",
        suggested_action="Progress must be non-decreasing and bounded by total uploads",
    )

    def __init__(self, customer: str, space: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid progress: {reason}", customer=customer, space=space)


class ResolutionErrorKind(Enum):
    """Classification of a claims-service failure, decided at the client boundary."""

    SERVICE_UNAVAILABLE = "service-unavailable"
    NOT_FOUND = "not-found"
    MALFORMED = "malformed"
    NETWORK = "network"

    @classmethod
    def from_status_code(cls, status_code: int) -> ResolutionErrorKind:
        """
        Map an HTTP status code to an error kind.

        5xx responses are service-side failures, 404 means no claims exist
        and every other status is treated as a malformed request.
        """
        if status_code >= 500:
            return cls.SERVICE_UNAVAILABLE
        if status_code == 404:
            return cls.NOT_FOUND
        return cls.MALFORMED


class ClaimsServiceError(Exception):
    """
    Typed failure returned by a claims-service client.

    Attributes:
        kind: The structured classification of the failure.
        status_code: HTTP status code, when the failure came from a response.
    """

    def __init__(
        self,
        kind: ResolutionErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def from_status(cls, status_code: int, message: str) -> ClaimsServiceError:
        return cls(ResolutionErrorKind.from_status_code(status_code), message, status_code)


class ResolutionError(MigrationError):
    """Base class for claim resolution failures for a single content digest."""

    def __init__(self, message: str, *, content: str, kind: ResolutionErrorKind) -> None:
        self.content = content
        self.kind = kind
        super().__init__(message)


class IndexingServiceUnavailableError(ResolutionError):
    """
    The claims service failed server-side for this content digest.

    Callers must not treat this as "no claims exist". The reconciler retries
    it against a per-space budget; once the budget is spent the worker fails
    the record with this error's text.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="INDEXING_SERVICE_UNAVAILABLE",
        category="claims",
        suggested_action="Retry the space once the indexing service is healthy",
        retry_config=RESOLVER_RETRY_CONFIG,
    )

    def __init__(self, content: str, detail: str | None = None) -> None:
        self.detail = detail
        message = f"Indexing service unavailable for {content}"
        if detail:
            message += f": {detail}"
        super().__init__(message, content=content, kind=ResolutionErrorKind.SERVICE_UNAVAILABLE)


class ResolutionDegradedError(ResolutionError):
    """
    Non-fatal resolution failure.

    Not raised by the resolver; it is attached to the empty ClaimSet so the
    reason for the empty result stays visible to callers.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RESOLUTION_DEGRADED",
        category="claims",
        suggested_action="Inspect the content identifier and network connectivity",
    )

    def __init__(self, content: str, kind: ResolutionErrorKind, detail: str) -> None:
        self.detail = detail
        super().__init__(
            f"Claim resolution degraded for {content} ({kind.value}): {detail}",
            content=content,
            kind=kind,
        )


class VerificationIncompleteError(MigrationError):
    """Raised when specific shard digests lack a valid location claim."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VERIFICATION_INCOMPLETE",
        category="verification",
        suggested_action="Republish location claims for the missing shards",
    )

    def __init__(self, space: str, root: str, missing: tuple[str, ...], reason: str) -> None:
        self.root = root
        self.missing = missing
        self.reason = reason
        super().__init__(
            f"Verification incomplete for {root} ({reason}): {len(missing)} shard(s) missing",
            space=space,
        )


class ProviderAttributionConflictError(MigrationError):
    """
    Two providers or two spaces claim the same content.

    Diagnostic only. Produced by aggregation, never raised against a record.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PROVIDER_ATTRIBUTION_CONFLICT",
        category="verification",
        suggested_action="Check the consumer-to-provider mapping for this space",
    )

    def __init__(self, customer: str, space: str, digests: tuple[str, ...]) -> None:
        self.digests = digests
        super().__init__(
            f"Conflicting provider attribution for {len(digests)} digest(s)",
            customer=customer,
            space=space,
        )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "RESOLVER_RETRY_CONFIG",
    "MigrationError",
    "RecordNotFoundError",
    "RecordAlreadyExistsError",
    "LedgerStateError",
    "ClaimConflictError",
    "NotOwnerError",
    "InvalidStatusTransitionError",
    "InvalidProgressError",
    "ResolutionErrorKind",
    "ClaimsServiceError",
    "ResolutionError",
    "IndexingServiceUnavailableError",
    "ResolutionDegradedError",
    "VerificationIncompleteError",
    "ProviderAttributionConflictError",
]
