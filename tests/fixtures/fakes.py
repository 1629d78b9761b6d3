"""
In-process fakes for the collaborators behind the Protocol seams.

None of these talk to real infrastructure. Each keeps a call log so tests
can assert on how the component under test used it.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from spacemigration.claims.resolver import QUERY_KIND_STANDARD
from spacemigration.ledger.interface import to_utc
from spacemigration.models import (
    NEW_PROVIDER,
    Claim,
    ClaimsQueryResult,
    ClaimType,
    ShardSlice,
)


class FakeClock:
    """Mutable UTC clock for ledger staleness tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = to_utc(start or datetime(2024, 6, 1, 12, 0, 0))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


def location_claim(
    digest: str,
    space: str | None,
    provider: str | None = NEW_PROVIDER,
) -> Claim:
    return Claim(
        type=ClaimType.LOCATION,
        content=digest,
        space=space,
        provider=provider,
        location=(f"https://example.test/blob/{digest}",),
    )


def index_claim(root: str, index_cid: str) -> Claim:
    return Claim(type=ClaimType.INDEX, content=root, index=index_cid)


def index_for(shards: dict[str, int]) -> dict[str, list[ShardSlice]]:
    """A decoded index where each shard holds one slice of the given length."""
    return {
        digest: [ShardSlice(digest=f"{digest}-block", offset=0, length=length)]
        for digest, length in shards.items()
    }


@dataclass
class FakeClaimsClient:
    """
    Scripted claims service.

    ``results`` maps a digest to its query result. ``errors`` maps a digest
    to a list of exceptions raised by successive calls before falling back
    to ``results``.
    """

    results: dict[str, ClaimsQueryResult] = field(default_factory=dict)
    errors: dict[str, list[BaseException]] = field(default_factory=dict)
    calls: list[tuple[tuple[str, ...], str, str | None]] = field(default_factory=list)

    async def query_claims(
        self,
        digests: Sequence[str],
        *,
        kind: str = QUERY_KIND_STANDARD,
        match_space: str | None = None,
    ) -> ClaimsQueryResult:
        self.calls.append((tuple(digests), kind, match_space))
        digest = digests[0]
        pending = self.errors.get(digest)
        if pending:
            raise pending.pop(0)
        return self.results.get(digest, ClaimsQueryResult())

    def add_claims(self, digest: str, *claims: Claim) -> None:
        current = self.results.get(digest, ClaimsQueryResult())
        self.results[digest] = ClaimsQueryResult(
            claims=[*current.claims, *claims], indexes=current.indexes
        )

    def set_indexed_upload(
        self,
        root: str,
        index_cid: str,
        shards: dict[str, int],
        claims: Sequence[Claim] = (),
    ) -> None:
        self.results[root] = ClaimsQueryResult(
            claims=[index_claim(root, index_cid), *claims],
            indexes={index_cid: index_for(shards)},
        )


@dataclass
class FakeShardStore:
    sizes: dict[tuple[str, str], int] = field(default_factory=dict)

    async def get_shard_size(self, space: str, digest: str) -> int | None:
        return self.sizes.get((space, digest))

    def add(self, space: str, digest: str, size: int) -> None:
        self.sizes[(space, digest)] = size


@dataclass
class FakeCatalog:
    uploads: dict[str, list[str]] = field(default_factory=dict)
    listed: list[tuple[str, str | None]] = field(default_factory=list)

    async def list_uploads(self, space: str, *, after: str | None = None) -> AsyncIterator[str]:
        self.listed.append((space, after))
        roots = self.uploads.get(space, [])
        start = roots.index(after) + 1 if after is not None and after in roots else 0
        for root in roots[start:]:
            yield root

    async def count_uploads(self, space: str) -> int:
        return len(self.uploads.get(space, []))


@dataclass
class FakeRepublisher:
    """Records republish calls; optionally repairs the claims it is asked for."""

    client: FakeClaimsClient | None = None
    provider: str = NEW_PROVIDER
    calls: list[tuple[str, str, tuple[str, ...]]] = field(default_factory=list)

    async def republish(self, space: str, root: str, missing: Sequence[str]) -> None:
        self.calls.append((space, root, tuple(missing)))
        if self.client is None:
            return
        for digest in missing:
            self.client.add_claims(root, location_claim(digest, space, self.provider))
