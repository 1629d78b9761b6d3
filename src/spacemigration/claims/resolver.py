"""
Claim resolver adapter.

Wraps a claims-service client and turns its typed failures into the three
outcomes callers care about:

- ``SERVICE_UNAVAILABLE`` raises IndexingServiceUnavailableError for this
  content only. It is never reported as "no claims".
- ``NOT_FOUND`` returns an empty ClaimSet: nothing has been claimed yet.
- ``MALFORMED`` and ``NETWORK`` return an empty ClaimSet carrying a
  ResolutionDegradedError so republishing can still make progress. These are
  logged and counted.

The adapter never retries. Retry budgets belong to the reconciler, which
tracks them per space rather than per call.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from spacemigration.exceptions import (
    ClaimsServiceError,
    IndexingServiceUnavailableError,
    ResolutionDegradedError,
    ResolutionErrorKind,
)
from spacemigration.metrics import WorkerMetrics
from spacemigration.models import ClaimSet, ClaimsQueryResult
from spacemigration.observability import Tracer, create_tracer
from spacemigration.observability.attributes import ATTR_CONTENT_DIGEST, ATTR_SPACE

logger = logging.getLogger(__name__)

QUERY_KIND_STANDARD = "standard"


@runtime_checkable
class ClaimsClient(Protocol):
    """
    Network client for the claims (indexing) service.

    Implementations raise ClaimsServiceError with a ResolutionErrorKind for
    every failure they can classify. ``ClaimsServiceError.from_status``
    maps HTTP status codes.
    """

    async def query_claims(
        self,
        digests: Sequence[str],
        *,
        kind: str = QUERY_KIND_STANDARD,
        match_space: str | None = None,
    ) -> ClaimsQueryResult: ...


@dataclass
class ResolutionCounters:
    """Outcome counts for one resolver instance."""

    resolved: int = 0
    not_found: int = 0
    degraded: int = 0
    unavailable: int = 0

    @property
    def total(self) -> int:
        return self.resolved + self.not_found + self.degraded + self.unavailable

    def to_dict(self) -> dict[str, int]:
        return {
            "resolved": self.resolved,
            "not_found": self.not_found,
            "degraded": self.degraded,
            "unavailable": self.unavailable,
        }


def build_claim_set(content: str, result: ClaimsQueryResult) -> ClaimSet:
    """
    Build a ClaimSet for ``content`` from a successful query.

    The index claim for the root selects which decoded index supplies the
    shard-to-slice mapping. An index claim whose index is absent from the
    response leaves ``shard_slices`` as None.
    """
    claims = tuple(result.claims)
    location_claims = [c for c in claims if c.is_location]
    index_claims = [c for c in claims if c.is_index and c.content == content]

    index_cid = next((c.index for c in index_claims if c.index), None)
    shard_slices = None
    if index_cid is not None and index_cid in result.indexes:
        shard_slices = {
            digest: tuple(slices) for digest, slices in result.indexes[index_cid].items()
        }

    return ClaimSet(
        content=content,
        claims=claims,
        has_index_claim=bool(index_claims),
        has_location_claim=bool(location_claims),
        spaces=frozenset(c.space for c in location_claims if c.space),
        index_cid=index_cid,
        shard_slices=shard_slices,
    )


class ClaimResolver:
    """
    Adapter from a ClaimsClient to ClaimSets.

    Example:
        >>> resolver = ClaimResolver(client)
        >>> claim_set = await resolver.resolve_claims("bafy...root")
        >>> if claim_set.is_degraded:
        ...     ...
        >>> resolver.counters.to_dict()
    """

    def __init__(
        self,
        client: ClaimsClient,
        *,
        metrics: WorkerMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._client = client
        self._metrics = metrics
        self._counters = ResolutionCounters()

    @property
    def counters(self) -> ResolutionCounters:
        return self._counters

    def _count(self, outcome: str) -> None:
        setattr(self._counters, outcome, getattr(self._counters, outcome) + 1)
        if self._metrics is not None:
            self._metrics.record_resolution(outcome)

    async def resolve_claims(
        self,
        content_digest: str,
        *,
        match_space: str | None = None,
    ) -> ClaimSet:
        """
        Resolve the claims for one content digest.

        Args:
            content_digest: Content root to resolve
            match_space: Optional space filter passed through to the service

        Returns:
            A fresh ClaimSet. Empty when nothing is claimed or when resolution
            degraded (see ``ClaimSet.degradation``).

        Raises:
            IndexingServiceUnavailableError: If the service failed server-side.
        """
        attrs = {ATTR_CONTENT_DIGEST: content_digest}
        if match_space:
            attrs[ATTR_SPACE] = match_space
        with self._tracer.span("spacemigration.claims.resolve", attrs):
            try:
                result = await self._client.query_claims(
                    [content_digest],
                    kind=QUERY_KIND_STANDARD,
                    match_space=match_space,
                )
            except ClaimsServiceError as e:
                return self._classify(content_digest, e.kind, e.message, e)
            except (TimeoutError, OSError) as e:
                return self._degrade(
                    content_digest, ResolutionErrorKind.NETWORK, str(e) or type(e).__name__
                )
            except ValueError as e:
                return self._degrade(content_digest, ResolutionErrorKind.MALFORMED, str(e))

            self._count("resolved")
            return build_claim_set(content_digest, result)

    def _classify(
        self,
        content: str,
        kind: ResolutionErrorKind,
        detail: str,
        cause: ClaimsServiceError,
    ) -> ClaimSet:
        if kind is ResolutionErrorKind.SERVICE_UNAVAILABLE:
            self._count("unavailable")
            logger.warning("Indexing service unavailable for %s: %s", content, detail)
            raise IndexingServiceUnavailableError(content, detail) from cause
        if kind is ResolutionErrorKind.NOT_FOUND:
            self._count("not_found")
            logger.debug("No claims found for %s", content)
            return ClaimSet.empty(content)
        return self._degrade(content, kind, detail)

    def _degrade(self, content: str, kind: ResolutionErrorKind, detail: str) -> ClaimSet:
        self._count("degraded")
        degradation = ResolutionDegradedError(content, kind, detail)
        logger.warning(
            "Claim resolution degraded for %s (%s): %s; continuing with empty claim set",
            content,
            kind.value,
            detail,
        )
        return ClaimSet.empty(content, degradation=degradation)


__all__ = [
    "QUERY_KIND_STANDARD",
    "ClaimsClient",
    "ResolutionCounters",
    "ClaimResolver",
    "build_claim_set",
]
