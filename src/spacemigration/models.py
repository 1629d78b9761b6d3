"""
Data models for the space migration engine.

Models in this module:

Enums:
    - SpaceStatus: Per-space migration lifecycle status
    - ClaimType: Known content claim types

Ledger Models:
    - SpaceMigrationRecord: One record per (customer, space)
    - Page: One page of a paginated ledger scan

Claim Models (wire level, validated with pydantic):
    - Claim: A single content claim returned by the claims service
    - ShardSlice: A content slice inside a shard, from a DAG index
    - ClaimsQueryResult: Claims plus decoded indexes for a query

Verification Models:
    - ShardReference: A shard referenced by a content index
    - ClaimSet: Resolved claims for one content root
    - AttributionConflict: A digest claimed by two spaces or providers
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from spacemigration.exceptions import ResolutionDegradedError

LEGACY_PROVIDER = "did:web:web3.storage"
"""Provider DID that owned spaces before the migration."""

NEW_PROVIDER = "did:web:up.storacha.network"
"""Provider DID that spaces are migrated to."""

DEFAULT_STALE_AFTER = timedelta(hours=1)
"""Age after which an in-progress record is considered stuck."""

T = TypeVar("T")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class SpaceStatus(Enum):
    """
    Migration status of a single space.

    State machine transitions:
        PENDING --claim--> IN_PROGRESS --complete--> COMPLETED
                               |
                               +--fail--> FAILED --claim--> IN_PROGRESS
                               |            |
                               |            +--retry--> PENDING
                               +--release / stale reclaim--> PENDING

    Nothing leaves COMPLETED.
    """

    PENDING = "pending"
    """Record created, waiting for a worker."""

    IN_PROGRESS = "in-progress"
    """Owned by exactly one worker."""

    COMPLETED = "completed"
    """Every upload verified."""

    FAILED = "failed"
    """Processing stopped with an error; may be re-claimed."""

    @property
    def is_terminal(self) -> bool:
        """True only for COMPLETED."""
        return self == SpaceStatus.COMPLETED

    @property
    def is_claimable(self) -> bool:
        """True for statuses a plain claim may start from."""
        return self in (SpaceStatus.PENDING, SpaceStatus.FAILED)

    def can_transition_to(self, target: SpaceStatus) -> bool:
        return target in VALID_TRANSITIONS.get(self, set())


VALID_TRANSITIONS: dict[SpaceStatus, set[SpaceStatus]] = {
    SpaceStatus.PENDING: {SpaceStatus.IN_PROGRESS},
    SpaceStatus.IN_PROGRESS: {
        SpaceStatus.COMPLETED,
        SpaceStatus.FAILED,
        SpaceStatus.PENDING,
        # Stale takeover by another worker.
        SpaceStatus.IN_PROGRESS,
    },
    SpaceStatus.FAILED: {SpaceStatus.IN_PROGRESS, SpaceStatus.PENDING},
    SpaceStatus.COMPLETED: set(),
}


@dataclass(frozen=True)
class SpaceMigrationRecord:
    """
    Persistent migration state for one (customer, space).

    Records are immutable snapshots; ledger backends return a new instance
    for every write.

    Attributes:
        customer: Customer DID.
        space: Space DID.
        status: Current migration status.
        total_uploads: Number of uploads in the space.
        completed_uploads: Number of uploads processed so far.
        last_processed_upload: Resume cursor (root of the last processed upload).
        instance_id: Current or last owning instance.
        worker_id: Current or last owning worker.
        error: Error text, only set while status is FAILED.
        created_at: When the record was created.
        updated_at: Last write time; doubles as the heartbeat.
        attribution_conflicts: Digests claimed by more than one provider or space.
    """

    customer: str
    space: str
    status: SpaceStatus = SpaceStatus.PENDING
    total_uploads: int = 0
    completed_uploads: int = 0
    last_processed_upload: str | None = None
    instance_id: str | None = None
    worker_id: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    attribution_conflicts: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.customer, self.space)

    @property
    def owner(self) -> tuple[str | None, str | None]:
        return (self.instance_id, self.worker_id)

    @property
    def progress_percent(self) -> float:
        """Share of uploads processed, 0.0 when the space has no uploads."""
        if self.total_uploads == 0:
            return 0.0
        return (self.completed_uploads / self.total_uploads) * 100

    def is_owned_by(self, instance_id: str, worker_id: str) -> bool:
        return (
            self.status == SpaceStatus.IN_PROGRESS
            and self.instance_id == instance_id
            and self.worker_id == worker_id
        )

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utc_now()) - self.updated_at

    def is_stale(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """True when in progress and not updated for at least ``threshold``."""
        return self.status == SpaceStatus.IN_PROGRESS and self.age(now) >= threshold

    def to_dict(self) -> dict[str, object]:
        return {
            "customer": self.customer,
            "space": self.space,
            "status": self.status.value,
            "total_uploads": self.total_uploads,
            "completed_uploads": self.completed_uploads,
            "last_processed_upload": self.last_processed_upload,
            "instance_id": self.instance_id,
            "worker_id": self.worker_id,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "attribution_conflicts": list(self.attribution_conflicts),
        }


@dataclass(frozen=True)
class Page(Generic[T]):
    """
    One page of a ledger scan.

    ``next_token`` is opaque; pass it back to the same scan to continue.
    It is None on the last page.
    """

    items: list[T]
    next_token: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_token is not None


class ClaimType(StrEnum):
    """Claim types the engine understands. Other types are carried through untouched."""

    LOCATION = "assert/location"
    INDEX = "assert/index"
    EQUALS = "assert/equals"


class Claim(BaseModel):
    """
    A content claim as returned by the claims service.

    Attributes:
        type: Claim type, e.g. ``assert/location``.
        content: Digest of the content the claim is about.
        space: Space the claim is attributed to. Absent on legacy claims.
        provider: Provider that issued the claim, when known.
        index: Index CID, set on ``assert/index`` claims.
        location: Retrieval URLs, set on ``assert/location`` claims.
    """

    model_config = ConfigDict(frozen=True)

    type: str
    content: str
    space: str | None = None
    provider: str | None = None
    index: str | None = None
    location: tuple[str, ...] = ()

    @property
    def is_location(self) -> bool:
        return self.type == ClaimType.LOCATION

    @property
    def is_index(self) -> bool:
        return self.type == ClaimType.INDEX


class ShardSlice(BaseModel):
    """A byte range of a shard holding one block of the content DAG."""

    model_config = ConfigDict(frozen=True)

    digest: str
    offset: int = Field(ge=0)
    length: int = Field(ge=0)

    @property
    def end(self) -> int:
        return self.offset + self.length


class ClaimsQueryResult(BaseModel):
    """
    Response of a claims query.

    ``indexes`` maps an index CID to the decoded sharded DAG index: shard
    digest to the slices it holds.
    """

    model_config = ConfigDict(frozen=True)

    claims: list[Claim] = Field(default_factory=list)
    indexes: dict[str, dict[str, list[ShardSlice]]] = Field(default_factory=dict)


@dataclass(frozen=True)
class ShardReference:
    """
    A shard referenced by a content index.

    Attributes:
        digest: Shard digest.
        slices: Slices of the content DAG stored in the shard.
    """

    digest: str
    slices: tuple[ShardSlice, ...] = ()

    @property
    def required_size(self) -> int:
        """Smallest shard size that can hold every slice."""
        return max((s.end for s in self.slices), default=0)


@dataclass(frozen=True)
class ClaimSet:
    """
    Claims resolved for one content root.

    Produced fresh for every query and never cached, since migration keeps
    publishing new claims. An empty set with ``degradation`` set means the
    lookup failed in a non-fatal way, not that no claims exist.
    """

    content: str
    claims: tuple[Claim, ...] = ()
    has_index_claim: bool = False
    has_location_claim: bool = False
    spaces: frozenset[str] = frozenset()
    index_cid: str | None = None
    shard_slices: Mapping[str, tuple[ShardSlice, ...]] | None = None
    degradation: ResolutionDegradedError | None = None

    @classmethod
    def empty(
        cls,
        content: str,
        degradation: ResolutionDegradedError | None = None,
    ) -> ClaimSet:
        return cls(content=content, degradation=degradation)

    @property
    def is_degraded(self) -> bool:
        return self.degradation is not None

    @property
    def location_has_space(self) -> bool:
        """True if any location claim for the root carries a space."""
        return any(c.space for c in self.location_claims_for(self.content))

    def location_claims_for(self, digest: str) -> list[Claim]:
        return [c for c in self.claims if c.is_location and c.content == digest]

    def shard_references(self) -> list[ShardReference]:
        """Shards listed by the resolved index, in index order."""
        if not self.shard_slices:
            return []
        return [
            ShardReference(digest=digest, slices=tuple(slices))
            for digest, slices in self.shard_slices.items()
        ]


@dataclass(frozen=True)
class AttributionConflict:
    """
    Location claims for one digest naming more than one space or provider.

    ``legacy_provider`` is set when the provider being migrated away from is
    one of the claimants.
    """

    digest: str
    spaces: frozenset[str]
    providers: frozenset[str]
    legacy_provider: str | None = None

    @property
    def involves_legacy(self) -> bool:
        return self.legacy_provider is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "digest": self.digest,
            "spaces": sorted(self.spaces),
            "providers": sorted(self.providers),
            "legacy_provider": self.legacy_provider,
        }


__all__ = [
    "LEGACY_PROVIDER",
    "NEW_PROVIDER",
    "DEFAULT_STALE_AFTER",
    "utc_now",
    "SpaceStatus",
    "VALID_TRANSITIONS",
    "SpaceMigrationRecord",
    "Page",
    "ClaimType",
    "Claim",
    "ShardSlice",
    "ClaimsQueryResult",
    "ShardReference",
    "ClaimSet",
    "AttributionConflict",
]
