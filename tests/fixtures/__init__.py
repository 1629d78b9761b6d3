"""
Shared test fixtures for the spacemigration library.

This module provides in-process fakes for every collaborator seam:
- FakeClaimsClient: scripted claims service
- FakeShardStore: local shard records
- FakeCatalog: upload roots per space
- FakeRepublisher: records (and optionally repairs) republish requests
- FakeClock: mutable UTC clock for staleness tests
- Claim builders (location_claim, index_claim, index_for)

Usage:
    from tests.fixtures import FakeClaimsClient, FakeShardStore, location_claim
"""

from tests.fixtures.fakes import (
    FakeCatalog,
    FakeClaimsClient,
    FakeClock,
    FakeRepublisher,
    FakeShardStore,
    index_claim,
    index_for,
    location_claim,
)

__all__ = [
    "FakeCatalog",
    "FakeClaimsClient",
    "FakeClock",
    "FakeRepublisher",
    "FakeShardStore",
    "index_claim",
    "index_for",
    "location_claim",
]
