"""Claims-service access: the client protocol and the resolver adapter."""

from spacemigration.claims.resolver import (
    QUERY_KIND_STANDARD,
    ClaimResolver,
    ClaimsClient,
    ResolutionCounters,
    build_claim_set,
)

__all__ = [
    "QUERY_KIND_STANDARD",
    "ClaimResolver",
    "ClaimsClient",
    "ResolutionCounters",
    "build_claim_set",
]
