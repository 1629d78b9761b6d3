"""Tests for MigrationSettings validation and environment loading."""

from datetime import timedelta

import pytest

from spacemigration.config import MigrationSettings
from spacemigration.models import DEFAULT_STALE_AFTER, NEW_PROVIDER


class TestDefaults:
    def test_defaults_are_valid(self) -> None:
        settings = MigrationSettings()

        assert settings.stale_after == DEFAULT_STALE_AFTER
        assert settings.target_provider == NEW_PROVIDER
        assert settings.allow_unattributed_claims is True
        assert settings.retry_failed is False

    def test_to_dict_is_plain(self) -> None:
        data = MigrationSettings(stale_after=timedelta(minutes=5)).to_dict()

        assert data["stale_after_seconds"] == 300.0
        assert data["resolver_retry"]["max_attempts"] == 3


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"instance_id": ""},
            {"stale_after": timedelta(0)},
            {"batch_size": 0},
            {"heartbeat_interval": 0},
            {"heartbeat_every_uploads": 0},
            {"idle_sleep": -1},
            {"resolver_retry_budget": -1},
            {"page_size": 0},
            {"watch_interval": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            MigrationSettings(**kwargs)

    def test_heartbeat_must_beat_stale_threshold(self) -> None:
        """A heartbeat slower than the stale threshold would let live work be reclaimed."""
        with pytest.raises(ValueError, match="heartbeat_interval"):
            MigrationSettings(stale_after=timedelta(seconds=30), heartbeat_interval=30)


class TestFromEnv:
    def test_empty_environment_gives_defaults(self) -> None:
        assert MigrationSettings.from_env({}) == MigrationSettings()

    def test_reads_prefixed_variables(self) -> None:
        settings = MigrationSettings.from_env(
            {
                "MIGRATION_INSTANCE_ID": "host-b",
                "MIGRATION_WORKER_ID": "7",
                "MIGRATION_BATCH_SIZE": "25",
                "MIGRATION_RETRY_FAILED": "yes",
                "MIGRATION_ALLOW_UNATTRIBUTED_CLAIMS": "off",
                "MIGRATION_IDLE_SLEEP": "2.5",
                "MIGRATION_STALE_AFTER_SECONDS": "600",
                "UNRELATED": "ignored",
            }
        )

        assert (settings.instance_id, settings.worker_id) == ("host-b", "7")
        assert settings.batch_size == 25
        assert settings.retry_failed is True
        assert settings.allow_unattributed_claims is False
        assert settings.idle_sleep == 2.5
        assert settings.stale_after == timedelta(minutes=10)

    def test_blank_values_ignored(self) -> None:
        settings = MigrationSettings.from_env({"MIGRATION_BATCH_SIZE": "  "})

        assert settings.batch_size == MigrationSettings().batch_size

    @pytest.mark.parametrize(
        ("name", "value", "message"),
        [
            ("MIGRATION_BATCH_SIZE", "many", "integer"),
            ("MIGRATION_IDLE_SLEEP", "soon", "number"),
            ("MIGRATION_RETRY_FAILED", "maybe", "boolean"),
        ],
    )
    def test_unparseable_values_named_in_error(self, name: str, value: str, message: str) -> None:
        with pytest.raises(ValueError, match=message) as exc_info:
            MigrationSettings.from_env({name: value})

        assert name in str(exc_info.value)

    def test_validation_applies_to_env(self) -> None:
        with pytest.raises(ValueError):
            MigrationSettings.from_env({"MIGRATION_BATCH_SIZE": "0"})
