"""
Configuration for migration workers and monitors.

This module provides:
- MigrationSettings: Tunables shared by the coordinator, reconciler,
  worker loop and diagnostics
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from spacemigration.exceptions import RESOLVER_RETRY_CONFIG, RetryConfig
from spacemigration.models import DEFAULT_STALE_AFTER, LEGACY_PROVIDER, NEW_PROVIDER

ENV_PREFIX = "MIGRATION_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class MigrationSettings:
    """
    Settings for a migration worker process.

    Attributes:
        instance_id: Identifier of this worker instance (host/container).
        worker_id: Identifier of the worker within the instance.
        stale_after: Age after which an in-progress record may be reclaimed.
            Also the default threshold for stuck-record diagnostics.
        batch_size: Number of spaces claimed per acquisition pass.
        retry_failed: Whether work acquisition also claims failed records.
        heartbeat_interval: Seconds between background progress heartbeats.
        heartbeat_every_uploads: Flush progress after this many uploads.
        idle_sleep: Seconds a worker sleeps when no work is available.
        target_provider: Provider DID claims must be attributed to.
        legacy_provider: Provider DID spaces are migrated away from.
        allow_unattributed_claims: Accept location claims with no space as a
            legacy allowance for claims issued before space attribution.
        resolver_retry: Backoff for indexing-service failures.
        resolver_retry_budget: Indexing-service retries allowed per space.
        page_size: Page size for ledger scans.
        watch_interval: Seconds between diagnostics refreshes in watch mode.
    """

    instance_id: str = "local"
    worker_id: str = "1"
    stale_after: timedelta = DEFAULT_STALE_AFTER
    batch_size: int = 10
    retry_failed: bool = False
    heartbeat_interval: float = 60.0
    heartbeat_every_uploads: int = 10
    idle_sleep: float = 30.0
    target_provider: str = NEW_PROVIDER
    legacy_provider: str = LEGACY_PROVIDER
    allow_unattributed_claims: bool = True
    resolver_retry: RetryConfig = field(default=RESOLVER_RETRY_CONFIG)
    resolver_retry_budget: int = 3
    page_size: int = 100
    watch_interval: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.instance_id or not self.worker_id:
            raise ValueError("instance_id and worker_id must be non-empty")
        if self.stale_after <= timedelta(0):
            raise ValueError(f"stale_after must be positive, got {self.stale_after}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.heartbeat_interval <= 0:
            raise ValueError(
                f"heartbeat_interval must be positive, got {self.heartbeat_interval}"
            )
        if self.heartbeat_interval >= self.stale_after.total_seconds():
            raise ValueError(
                f"heartbeat_interval ({self.heartbeat_interval}s) must be shorter than "
                f"stale_after ({self.stale_after}) or live work gets reclaimed"
            )
        if self.heartbeat_every_uploads < 1:
            raise ValueError(
                f"heartbeat_every_uploads must be positive, got {self.heartbeat_every_uploads}"
            )
        if self.idle_sleep < 0:
            raise ValueError(f"idle_sleep must be >= 0, got {self.idle_sleep}")
        if self.resolver_retry_budget < 0:
            raise ValueError(
                f"resolver_retry_budget must be >= 0, got {self.resolver_retry_budget}"
            )
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.watch_interval <= 0:
            raise ValueError(f"watch_interval must be positive, got {self.watch_interval}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MigrationSettings:
        """
        Build settings from ``MIGRATION_*`` environment variables.

        Unset variables keep their defaults. ``MIGRATION_STALE_AFTER_SECONDS``
        sets ``stale_after``; every other variable is the upper-cased field
        name, e.g. ``MIGRATION_BATCH_SIZE``.

        Raises:
            ValueError: If a variable cannot be parsed or fails validation.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        def read(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        for name in ("instance_id", "worker_id", "target_provider", "legacy_provider"):
            if (value := read(name.upper())) is not None:
                kwargs[name] = value

        for name in ("batch_size", "heartbeat_every_uploads", "resolver_retry_budget", "page_size"):
            if (value := read(name.upper())) is not None:
                kwargs[name] = _parse_int(ENV_PREFIX + name.upper(), value)

        for name in ("heartbeat_interval", "idle_sleep", "watch_interval"):
            if (value := read(name.upper())) is not None:
                kwargs[name] = _parse_float(ENV_PREFIX + name.upper(), value)

        for name in ("retry_failed", "allow_unattributed_claims"):
            if (value := read(name.upper())) is not None:
                kwargs[name] = _parse_bool(ENV_PREFIX + name.upper(), value)

        if (value := read("STALE_AFTER_SECONDS")) is not None:
            seconds = _parse_float(ENV_PREFIX + "STALE_AFTER_SECONDS", value)
            kwargs["stale_after"] = timedelta(seconds=seconds)

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for structured logging."""
        return {
            "instance_id": self.instance_id,
            "worker_id": self.worker_id,
            "stale_after_seconds": self.stale_after.total_seconds(),
            "batch_size": self.batch_size,
            "retry_failed": self.retry_failed,
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_every_uploads": self.heartbeat_every_uploads,
            "idle_sleep": self.idle_sleep,
            "target_provider": self.target_provider,
            "legacy_provider": self.legacy_provider,
            "allow_unattributed_claims": self.allow_unattributed_claims,
            "resolver_retry": self.resolver_retry.to_dict(),
            "resolver_retry_budget": self.resolver_retry_budget,
            "page_size": self.page_size,
            "watch_interval": self.watch_interval,
        }


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


__all__ = ["ENV_PREFIX", "MigrationSettings"]
