"""
Tests for round sizing and the randomized round split.
"""

import pytest

from paramavg import TrainingConfiguration
from paramavg.planner import num_rounds, objects_per_round, split_into_rounds


def _config(num_workers, records, batch_size, frequency):
    return (
        TrainingConfiguration.builder(num_workers, records)
        .batch_size_per_worker(batch_size)
        .averaging_frequency(frequency)
        .build()
    )


# =============================================================================
# Round Size Tests
# =============================================================================

class TestObjectsPerRound:
    """Tests for the two sizing branches."""

    def test_single_example_objects(self):
        """4 workers x 16 examples x 5 minibatches = 320 objects."""
        assert objects_per_round(_config(4, 1, 16, 5)) == 320

    @pytest.mark.parametrize(
        "workers,batch,freq", [(1, 1, 1), (3, 7, 2), (8, 32, 10), (2, 16, 1)]
    )
    def test_single_example_objects_is_product(self, workers, batch, freq):
        assert objects_per_round(_config(workers, 1, batch, freq)) == workers * batch * freq

    def test_prebatched_objects_clamped_to_one_per_worker(self):
        """100 examples per object, batch 50, frequency 1, 3 workers gives 3."""
        assert objects_per_round(_config(3, 100, 50, 1)) == 3

    @pytest.mark.parametrize("workers", [1, 2, 5, 16])
    def test_prebatched_small_window_is_num_workers(self, workers):
        """When one object covers a worker's whole window, one object per worker."""
        assert objects_per_round(_config(workers, 1000, 8, 1)) == workers

    def test_prebatched_uses_averaging_frequency(self):
        """Pre-batched sizing counts minibatches per worker, times workers."""
        assert objects_per_round(_config(4, 10, 16, 5)) == 20

    def test_always_positive(self):
        assert objects_per_round(_config(1, 2, 1, 1)) >= 1


# =============================================================================
# Round Split Tests
# =============================================================================

class TestSplitIntoRounds:
    """Tests for cutting a dataset into ordered rounds."""

    def test_num_rounds_rounds_down(self):
        assert num_rounds(1000, 320) == 3
        assert num_rounds(640, 320) == 2

    def test_small_dataset_is_one_round(self):
        assert num_rounds(100, 320) == 1
        assert num_rounds(320, 320) == 1

    def test_small_dataset_used_whole(self, runtime):
        dataset = runtime.parallelize(range(50), num_partitions=2)
        rounds = split_into_rounds(dataset, 50, 320)
        assert rounds == [dataset]

    def test_rounds_are_disjoint_and_complete(self, runtime):
        """Remainder objects are spread over the rounds, none are dropped."""
        dataset = runtime.parallelize(range(1000), num_partitions=4)
        rounds = split_into_rounds(dataset, 1000, 320, seed=7)

        assert len(rounds) == 3
        collected = [obj for r in rounds for obj in r.collect()]
        assert sorted(collected) == list(range(1000))
        assert sum(r.count() for r in rounds) == 1000
        assert all(r.count() > 0 for r in rounds)

    def test_split_keeps_partition_count(self, runtime):
        dataset = runtime.parallelize(range(100), num_partitions=5)
        rounds = split_into_rounds(dataset, 100, 30, seed=0)
        assert all(r.num_partitions == 5 for r in rounds)

    def test_seeded_split_is_deterministic(self, runtime):
        dataset = runtime.parallelize(range(500), num_partitions=3)
        first = [r.collect() for r in split_into_rounds(dataset, 500, 100, seed=11)]
        second = [r.collect() for r in split_into_rounds(dataset, 500, 100, seed=11)]
        assert first == second

    def test_split_is_not_storage_order(self, runtime):
        """The first round is not simply the first objects in storage order."""
        dataset = runtime.parallelize(range(1000), num_partitions=1)
        rounds = split_into_rounds(dataset, 1000, 100, seed=3)
        assert rounds[0].collect() != list(range(rounds[0].count()))

    @pytest.mark.parametrize("seed", range(10))
    def test_every_round_holds_a_near_equal_share(self, runtime, seed):
        """No round is empty, and round sizes differ from total // rounds by at most one."""
        dataset = runtime.parallelize(range(30), num_partitions=3)
        rounds = split_into_rounds(dataset, 30, 3, seed=seed)

        assert len(rounds) == 10
        for round_data in rounds:
            assert round_data.count() == 3

        dataset = runtime.parallelize(range(107), num_partitions=4)
        rounds = split_into_rounds(dataset, 107, 20, seed=seed)
        expected = 107 // len(rounds)
        assert len(rounds) == 5
        for round_data in rounds:
            assert expected <= round_data.count() <= expected + 1
