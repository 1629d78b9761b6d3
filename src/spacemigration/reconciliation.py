"""
Shard reconciliation: decides whether one upload is fully migrated.

An upload root is *verified* when every shard referenced by its DAG index
has a local shard record for the space of a sufficient size and at least
one location claim attributing it to the target space. Roots without an
index claim are treated as single-shard uploads: the root itself must carry
a location claim attributed to the target space.

Verification Outcomes:
    - VERIFIED: every required shard resolved
    - PENDING_REPUBLISH: specific shards are missing claims or records

Duplicate location claims for one digest from two providers or two spaces
never fail verification on their own. They are reported as
AttributionConflicts so the worker can persist them for diagnostics.

Usage:
    >>> reconciler = ShardReconciler(resolver, shard_store)
    >>> budget = reconciler.new_budget()
    >>> result = await reconciler.reconcile(space, root, budget=budget)
    >>> if not result.is_verified:
    ...     print(result.reason, result.missing_shards)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from spacemigration.claims.resolver import ClaimResolver
from spacemigration.config import MigrationSettings
from spacemigration.exceptions import (
    IndexingServiceUnavailableError,
    ResolutionDegradedError,
    RetryConfig,
    VerificationIncompleteError,
)
from spacemigration.models import (
    LEGACY_PROVIDER,
    AttributionConflict,
    Claim,
    ClaimSet,
    ShardReference,
)
from spacemigration.observability import Tracer, create_tracer
from spacemigration.observability.attributes import (
    ATTR_CONTENT_DIGEST,
    ATTR_MISSING_COUNT,
    ATTR_RETRY_COUNT,
    ATTR_SHARD_COUNT,
    ATTR_SPACE,
)

logger = logging.getLogger(__name__)

REASON_NO_LOCATION_CLAIM = "no-location-claim"
REASON_MISSING_SHARDS = "missing-shards"
REASON_INDEX_UNRESOLVED = "index-unresolved"
REASON_INDEX_EMPTY = "index-empty"
REASON_RESOLUTION_DEGRADED = "resolution-degraded"

SHARD_OK = "ok"
SHARD_NO_RECORD = "no-shard-record"
SHARD_SIZE_MISMATCH = "size-mismatch"
SHARD_NO_CLAIM = "no-location-claim"


@runtime_checkable
class ShardRecordStore(Protocol):
    """Read-only access to the locally stored shard records."""

    async def get_shard_size(self, space: str, digest: str) -> int | None:
        """Byte size of the shard stored for ``space``, or None if there is no record."""
        ...


class VerificationOutcome(Enum):
    VERIFIED = "verified"
    PENDING_REPUBLISH = "pending-republish"


@dataclass(frozen=True)
class ShardCheck:
    """
    Result of checking one shard.

    Attributes:
        digest: Shard digest.
        status: SHARD_OK or the first failed requirement.
        stored_size: Size of the local shard record, if one exists.
        required_size: Smallest size that holds every indexed slice.
        attributed: A location claim names the target space.
        legacy: Accepted only through an unattributed legacy claim.
    """

    digest: str
    status: str
    stored_size: int | None = None
    required_size: int = 0
    attributed: bool = False
    legacy: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SHARD_OK


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Verification result for one upload root.

    Attributes:
        space: Space the upload belongs to.
        root: Upload root digest.
        outcome: VERIFIED or PENDING_REPUBLISH.
        reason: Why the upload is pending, None when verified.
        checks: Per-shard checks in index order.
        missing_shards: Digests that failed a check.
        attribution_conflicts: Digests claimed by more than one space or provider.
        degradation: Set when claim resolution degraded to an empty set.
        resolution_attempts: Claim lookups made, including retries.
    """

    space: str
    root: str
    outcome: VerificationOutcome
    reason: str | None = None
    checks: tuple[ShardCheck, ...] = ()
    missing_shards: tuple[str, ...] = ()
    attribution_conflicts: tuple[AttributionConflict, ...] = ()
    degradation: ResolutionDegradedError | None = None
    resolution_attempts: int = 1

    @property
    def is_verified(self) -> bool:
        return self.outcome == VerificationOutcome.VERIFIED

    def raise_for_incomplete(self) -> None:
        """
        Raise VerificationIncompleteError unless verified.

        Raises:
            VerificationIncompleteError: With the exact missing digests.
        """
        if not self.is_verified:
            raise VerificationIncompleteError(
                self.space, self.root, self.missing_shards, self.reason or "unknown"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "space": self.space,
            "root": self.root,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "missing_shards": list(self.missing_shards),
            "attribution_conflicts": [c.to_dict() for c in self.attribution_conflicts],
            "degraded": self.degradation is not None,
            "resolution_attempts": self.resolution_attempts,
        }


@dataclass
class RetryBudget:
    """
    Indexing-service retries allowed for one space.

    One budget is shared by every upload of a space, so a flapping service
    cannot stall a single space indefinitely.
    """

    limit: int
    config: RetryConfig = field(default_factory=RetryConfig)
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> float | None:
        """
        Spend one retry.

        Returns:
            Seconds to wait before retrying, or None if the budget is spent.
        """
        if self.exhausted:
            return None
        delay_ms = self.config.get_delay_ms(self.used)
        self.used += 1
        return delay_ms / 1000.0


def find_attribution_conflicts(
    claim_set: ClaimSet,
    legacy_provider: str = LEGACY_PROVIDER,
) -> tuple[AttributionConflict, ...]:
    """
    Digests whose location claims name two or more spaces or two or more providers.

    Conflicts where ``legacy_provider`` is one of the claimants carry it in
    ``AttributionConflict.legacy_provider``.
    """
    by_digest: dict[str, list[Claim]] = {}
    for claim in claim_set.claims:
        if claim.is_location:
            by_digest.setdefault(claim.content, []).append(claim)

    conflicts = []
    for digest in sorted(by_digest):
        claims = by_digest[digest]
        spaces = frozenset(c.space for c in claims if c.space)
        providers = frozenset(c.provider for c in claims if c.provider)
        if len(spaces) > 1 or len(providers) > 1:
            conflicts.append(
                AttributionConflict(
                    digest=digest,
                    spaces=spaces,
                    providers=providers,
                    legacy_provider=legacy_provider if legacy_provider in providers else None,
                )
            )
    return tuple(conflicts)


class ShardReconciler:
    """
    Reconciles upload roots against the claims service and local shard records.

    Args:
        resolver: Claim resolver adapter
        shard_store: Local shard records
        settings: Target provider, legacy allowance and retry budget
        sleep: Awaitable sleep, injectable for tests
        tracer: Optional tracer for tracing
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        resolver: ClaimResolver,
        shard_store: ShardRecordStore,
        settings: MigrationSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._resolver = resolver
        self._shards = shard_store
        self._settings = settings or MigrationSettings()
        self._sleep = sleep

    def new_budget(self) -> RetryBudget:
        """A fresh per-space retry budget from settings."""
        return RetryBudget(
            limit=self._settings.resolver_retry_budget,
            config=self._settings.resolver_retry,
        )

    async def reconcile(
        self,
        space: str,
        root: str,
        *,
        budget: RetryBudget | None = None,
    ) -> ReconciliationResult:
        """
        Verify one upload root for ``space``.

        Raises:
            IndexingServiceUnavailableError: When the service keeps failing
                server-side after the space's retry budget is spent.
        """
        budget = budget if budget is not None else self.new_budget()
        with self._tracer.span(
            "spacemigration.reconcile",
            {ATTR_SPACE: space, ATTR_CONTENT_DIGEST: root},
        ) as span:
            claim_set, attempts = await self._resolve(space, root, budget)
            conflicts = find_attribution_conflicts(claim_set, self._settings.legacy_provider)
            if conflicts:
                logger.warning(
                    "Conflicting location claims for %d digest(s) of %s in space %s "
                    "(%d involving the legacy provider)",
                    len(conflicts),
                    root,
                    space,
                    sum(1 for c in conflicts if c.involves_legacy),
                )

            if claim_set.has_index_claim:
                result = await self._reconcile_indexed(space, root, claim_set)
            else:
                result = self._reconcile_single_shard(space, root, claim_set)

            result = ReconciliationResult(
                space=space,
                root=root,
                outcome=result.outcome,
                reason=result.reason,
                checks=result.checks,
                missing_shards=result.missing_shards,
                attribution_conflicts=conflicts,
                degradation=claim_set.degradation,
                resolution_attempts=attempts,
            )
            if span is not None:
                span.set_attribute(ATTR_SHARD_COUNT, len(result.checks))
                span.set_attribute(ATTR_MISSING_COUNT, len(result.missing_shards))
                span.set_attribute(ATTR_RETRY_COUNT, attempts - 1)

            if result.is_verified:
                logger.debug("Verified %s in space %s", root, space)
            else:
                logger.info(
                    "Upload %s in space %s pending republish (%s): %d shard(s) missing",
                    root,
                    space,
                    result.reason,
                    len(result.missing_shards),
                )
            return result

    async def _resolve(
        self,
        space: str,
        root: str,
        budget: RetryBudget,
    ) -> tuple[ClaimSet, int]:
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._resolver.resolve_claims(root), attempts
            except IndexingServiceUnavailableError:
                delay = budget.consume()
                if delay is None:
                    logger.error(
                        "Retry budget exhausted for space %s after %d indexing-service failure(s)",
                        space,
                        budget.used + 1,
                    )
                    raise
                logger.warning(
                    "Indexing service unavailable for %s, retrying in %.2fs (%d/%d)",
                    root,
                    delay,
                    budget.used,
                    budget.limit,
                )
                await self._sleep(delay)

    def _reconcile_single_shard(
        self,
        space: str,
        root: str,
        claim_set: ClaimSet,
    ) -> ReconciliationResult:
        # Root digest is the shard digest; attribution is required.
        claims = claim_set.location_claims_for(root)
        attributed = any(self._attributed_to(c, space) for c in claims)
        if attributed:
            check = ShardCheck(digest=root, status=SHARD_OK, attributed=True)
            return ReconciliationResult(
                space=space,
                root=root,
                outcome=VerificationOutcome.VERIFIED,
                checks=(check,),
            )
        reason = REASON_RESOLUTION_DEGRADED if claim_set.is_degraded else REASON_NO_LOCATION_CLAIM
        return ReconciliationResult(
            space=space,
            root=root,
            outcome=VerificationOutcome.PENDING_REPUBLISH,
            reason=reason,
            checks=(ShardCheck(digest=root, status=SHARD_NO_CLAIM),),
            missing_shards=(root,),
        )

    async def _reconcile_indexed(
        self,
        space: str,
        root: str,
        claim_set: ClaimSet,
    ) -> ReconciliationResult:
        if claim_set.shard_slices is None:
            return ReconciliationResult(
                space=space,
                root=root,
                outcome=VerificationOutcome.PENDING_REPUBLISH,
                reason=REASON_INDEX_UNRESOLVED,
            )
        if not claim_set.shard_slices:
            # No shards listed, so nothing is attributed.
            return ReconciliationResult(
                space=space,
                root=root,
                outcome=VerificationOutcome.PENDING_REPUBLISH,
                reason=REASON_INDEX_EMPTY,
            )

        checks = tuple(
            [await self._check_shard(space, shard, claim_set) for shard in claim_set.shard_references()]
        )
        missing = tuple(c.digest for c in checks if not c.ok)
        if missing:
            return ReconciliationResult(
                space=space,
                root=root,
                outcome=VerificationOutcome.PENDING_REPUBLISH,
                reason=REASON_MISSING_SHARDS,
                checks=checks,
                missing_shards=missing,
            )
        return ReconciliationResult(
            space=space,
            root=root,
            outcome=VerificationOutcome.VERIFIED,
            checks=checks,
        )

    async def _check_shard(
        self,
        space: str,
        shard: ShardReference,
        claim_set: ClaimSet,
    ) -> ShardCheck:
        stored = await self._shards.get_shard_size(space, shard.digest)
        required = shard.required_size
        if stored is None:
            return ShardCheck(digest=shard.digest, status=SHARD_NO_RECORD, required_size=required)
        if stored < required:
            return ShardCheck(
                digest=shard.digest,
                status=SHARD_SIZE_MISMATCH,
                stored_size=stored,
                required_size=required,
            )

        claims = claim_set.location_claims_for(shard.digest)
        attributed = any(self._attributed_to(c, space) for c in claims)
        legacy = (
            not attributed
            and self._settings.allow_unattributed_claims
            and any(self._unattributed(c) for c in claims)
        )
        status = SHARD_OK if attributed or legacy else SHARD_NO_CLAIM
        return ShardCheck(
            digest=shard.digest,
            status=status,
            stored_size=stored,
            required_size=required,
            attributed=attributed,
            legacy=legacy,
        )

    def _provider_ok(self, claim: Claim) -> bool:
        return claim.provider is None or claim.provider == self._settings.target_provider

    def _attributed_to(self, claim: Claim, space: str) -> bool:
        return claim.space == space and self._provider_ok(claim)

    def _unattributed(self, claim: Claim) -> bool:
        return claim.space is None and self._provider_ok(claim)


__all__ = [
    "REASON_NO_LOCATION_CLAIM",
    "REASON_MISSING_SHARDS",
    "REASON_INDEX_UNRESOLVED",
    "REASON_INDEX_EMPTY",
    "REASON_RESOLUTION_DEGRADED",
    "SHARD_OK",
    "SHARD_NO_RECORD",
    "SHARD_SIZE_MISMATCH",
    "SHARD_NO_CLAIM",
    "ShardRecordStore",
    "VerificationOutcome",
    "ShardCheck",
    "ReconciliationResult",
    "RetryBudget",
    "find_attribution_conflicts",
    "ShardReconciler",
]
