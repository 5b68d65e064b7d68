"""
Tests for TrainingConfiguration, its builder and the repartition policy parser.
"""

import dataclasses

import pytest

from paramavg import (
    InvalidConfigurationError,
    RepartitionPolicy,
    TrainingConfiguration,
    TrainingConstants,
    UnknownRepartitionPolicyError,
)


# =============================================================================
# Builder Tests
# =============================================================================

class TestBuilder:
    """Tests for the fluent configuration surface."""

    def test_defaults(self):
        """Optional settings fall back to the documented defaults."""
        config = TrainingConfiguration.builder(4, 1).build()
        assert config.num_workers == 4
        assert config.records_per_stored_object == 1
        assert config.batch_size_per_worker == 16
        assert config.averaging_frequency == 5
        assert config.prefetch_batches == 0
        assert config.save_optimizer_state is True
        assert config.repartition_policy is RepartitionPolicy.NEVER
        assert config.collect_stats is False

    def test_defaults_match_constants(self):
        config = TrainingConfiguration.builder(1, 1).build()
        assert config.batch_size_per_worker == TrainingConstants.DEFAULT_BATCH_SIZE_PER_WORKER
        assert config.averaging_frequency == TrainingConstants.DEFAULT_AVERAGING_FREQUENCY

    def test_chained_setters(self):
        """Every setter returns the builder and lands in the built config."""
        config = (
            TrainingConfiguration.builder(num_workers=2, records_per_stored_object=8)
            .batch_size_per_worker(32)
            .averaging_frequency(10)
            .worker_prefetch_batches(3)
            .save_optimizer_state(False)
            .repartition_policy("when_partition_count_differs")
            .collect_stats(True)
            .build()
        )
        assert config.batch_size_per_worker == 32
        assert config.averaging_frequency == 10
        assert config.prefetch_batches == 3
        assert config.save_optimizer_state is False
        assert config.repartition_policy is RepartitionPolicy.WHEN_PARTITION_COUNT_DIFFERS
        assert config.collect_stats is True

    def test_averaging_frequency_validated_eagerly(self):
        """A zero averaging frequency fails at the setter, not at build()."""
        builder = TrainingConfiguration.builder(2, 1)
        with pytest.raises(InvalidConfigurationError):
            builder.averaging_frequency(0)

    @pytest.mark.parametrize("num_workers,records", [(0, 1), (-1, 1), (1, 0), (2, -5)])
    def test_required_values_must_be_positive(self, num_workers, records):
        with pytest.raises(InvalidConfigurationError):
            TrainingConfiguration.builder(num_workers, records)

    def test_batch_size_zero_rejected(self):
        """A zero batch size would make rounds of zero objects."""
        builder = TrainingConfiguration.builder(2, 1).batch_size_per_worker(0)
        with pytest.raises(InvalidConfigurationError, match="batch size"):
            builder.build()

    def test_negative_prefetch_rejected(self):
        builder = TrainingConfiguration.builder(2, 1).worker_prefetch_batches(-1)
        with pytest.raises(InvalidConfigurationError):
            builder.build()

    def test_unknown_policy_rejected(self):
        with pytest.raises(UnknownRepartitionPolicyError):
            TrainingConfiguration.builder(2, 1).repartition_policy("sometimes")


# =============================================================================
# Dataclass Tests
# =============================================================================

class TestTrainingConfiguration:
    """Tests for direct construction and serialization."""

    def test_direct_construction_validates(self):
        with pytest.raises(InvalidConfigurationError):
            TrainingConfiguration(num_workers=2, records_per_stored_object=1, averaging_frequency=0)

    def test_bool_is_not_a_count(self):
        with pytest.raises(InvalidConfigurationError):
            TrainingConfiguration(num_workers=True, records_per_stored_object=1)

    def test_policy_string_normalized(self):
        config = TrainingConfiguration(
            num_workers=2, records_per_stored_object=1, repartition_policy="ALWAYS"
        )
        assert config.repartition_policy is RepartitionPolicy.ALWAYS

    def test_frozen(self):
        config = TrainingConfiguration.builder(2, 1).build()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.num_workers = 3

    def test_config_errors_are_value_errors(self):
        """Callers catching ValueError still see configuration mistakes."""
        with pytest.raises(ValueError):
            TrainingConfiguration.builder(0, 1)

    def test_config_export(self):
        config = TrainingConfiguration.builder(3, 1).repartition_policy("always").build()
        exported = config.__config__()
        assert exported["num_workers"] == 3
        assert exported["repartition_policy"] == "always"
        assert exported["save_optimizer_state"] is True


# =============================================================================
# Policy Parsing Tests
# =============================================================================

class TestRepartitionPolicyParse:

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("never", RepartitionPolicy.NEVER),
            ("NEVER", RepartitionPolicy.NEVER),
            ("Always", RepartitionPolicy.ALWAYS),
            ("when_partition_count_differs", RepartitionPolicy.WHEN_PARTITION_COUNT_DIFFERS),
            (RepartitionPolicy.ALWAYS, RepartitionPolicy.ALWAYS),
        ],
    )
    def test_parse(self, value, expected):
        assert RepartitionPolicy.parse(value) is expected

    @pytest.mark.parametrize("value", ["", "sometimes", 3, None])
    def test_parse_unknown(self, value):
        with pytest.raises(UnknownRepartitionPolicyError):
            RepartitionPolicy.parse(value)
