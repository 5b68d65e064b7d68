"""
Tests for the WorkerResult averaging monoid.
"""

import pytest
import torch

from paramavg import (
    AggregationAccumulator,
    DimensionMismatchError,
    EmptyAggregationError,
    TorchOptimizerStateAggregator,
    WorkerResult,
    WorkerStats,
)
from paramavg.aggregation import add, combine
from paramavg.runtime import tree_combine


def _result(values, score=0.0, count=1, stats=None):
    return WorkerResult(
        parameter_sum=torch.tensor(values, dtype=torch.float64),
        score_sum=score,
        aggregation_count=count,
        worker_stats=stats,
    )


def _left_fold(results):
    acc = AggregationAccumulator.empty()
    for r in results:
        acc = add(acc, r)
    return acc


# =============================================================================
# Averaging Tests
# =============================================================================

class TestAveraging:
    """Tests for add() and average()."""

    def test_three_workers(self):
        """[1,1], [3,1], [5,1] average to [3,1] with count 3."""
        acc = _left_fold([_result([1, 1], 0.5), _result([3, 1], 1.0), _result([5, 1], 1.5)])

        params, optimizer_state, score = acc.average()
        assert acc.aggregation_count == 3
        assert torch.equal(params, torch.tensor([3.0, 1.0], dtype=torch.float64))
        assert optimizer_state is None
        assert score == pytest.approx(1.0)

    def test_first_add_takes_ownership(self):
        """The first result's vector becomes the sum without a copy."""
        result = _result([2, 4])
        acc = add(AggregationAccumulator.empty(), result)
        assert acc.parameter_sum is result.parameter_sum

    def test_empty_accumulator_cannot_average(self):
        with pytest.raises(EmptyAggregationError):
            AggregationAccumulator.empty().average()

    def test_count_below_one_rejected(self):
        with pytest.raises(ValueError):
            _result([1.0], count=0)

    def test_pre_aggregated_results(self):
        """A result carrying two models counts twice in the average."""
        acc = _left_fold([_result([4, 4], score=2.0, count=2), _result([5, 2], score=4.0)])
        params, _, score = acc.average()
        assert acc.aggregation_count == 3
        assert torch.allclose(params, torch.tensor([3.0, 2.0], dtype=torch.float64))
        assert score == pytest.approx(2.0)


# =============================================================================
# Monoid Law Tests
# =============================================================================

class TestMonoidLaws:
    """Tests that the reduction tree shape does not change the result."""

    @staticmethod
    def _results(seed, n=7):
        generator = torch.Generator().manual_seed(seed)
        vectors = torch.randn(n, 5, generator=generator, dtype=torch.float64)
        return [_result(v.tolist(), score=float(i)) for i, v in enumerate(vectors)]

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_left_fold_equals_balanced_tree(self, seed):
        left = _left_fold(self._results(seed))

        # Fresh results: add() writes into the first vector it receives
        leaves = [add(AggregationAccumulator.empty(), r) for r in self._results(seed)]
        tree = tree_combine(leaves, combine)

        assert tree.aggregation_count == left.aggregation_count == 7
        assert torch.allclose(tree.parameter_sum, left.parameter_sum)
        assert tree.score_sum == pytest.approx(left.score_sum)

    def test_combine_is_commutative(self):
        a1, b1 = self._results(3, n=2)
        a2, b2 = self._results(3, n=2)
        ab = combine(add(AggregationAccumulator.empty(), a1), add(AggregationAccumulator.empty(), b1))
        ba = combine(add(AggregationAccumulator.empty(), b2), add(AggregationAccumulator.empty(), a2))
        assert torch.allclose(ab.parameter_sum, ba.parameter_sum)
        assert ab.aggregation_count == ba.aggregation_count

    def test_mixed_add_and_combine(self):
        """Partial folds merged with combine match one straight fold."""
        left = _left_fold(self._results(4))
        results = self._results(4)
        partial_a = _left_fold(results[:3])
        partial_b = _left_fold(results[3:])
        merged = combine(partial_a, partial_b)
        assert merged.aggregation_count == left.aggregation_count
        assert torch.allclose(merged.parameter_sum, left.parameter_sum)

    def test_splitting_one_contribution(self):
        """Adding r equals adding r_partial then r_remainder when they sum to r."""
        whole = add(AggregationAccumulator.empty(), _result([6, 8], score=3.0, count=2))
        split = add(
            add(AggregationAccumulator.empty(), _result([2, 5], score=1.0, count=1)),
            _result([4, 3], score=2.0, count=1),
        )
        assert torch.equal(whole.parameter_sum, split.parameter_sum)
        assert whole.score_sum == split.score_sum
        assert whole.aggregation_count == split.aggregation_count

    def test_combine_with_empty_is_identity(self):
        acc = _left_fold(self._results(5, n=2))
        assert combine(acc, AggregationAccumulator.empty()) is acc
        assert combine(AggregationAccumulator.empty(), acc) is acc


# =============================================================================
# Failure Tests
# =============================================================================

class TestDimensionMismatch:
    """Tests that mismatched vectors are never partially merged."""

    def test_add_mismatch(self):
        """Length 10 into an accumulator of length 12 raises."""
        acc = add(AggregationAccumulator.empty(), _result([1.0] * 12, score=1.0))
        before = acc.parameter_sum.clone()

        with pytest.raises(DimensionMismatchError) as excinfo:
            add(acc, _result([1.0] * 10, score=5.0))

        assert excinfo.value.expected == (12,)
        assert excinfo.value.actual == (10,)
        assert torch.equal(acc.parameter_sum, before)
        assert acc.aggregation_count == 1
        assert acc.score_sum == 1.0

    def test_combine_mismatch(self):
        a = add(AggregationAccumulator.empty(), _result([1.0] * 3))
        b = add(AggregationAccumulator.empty(), _result([1.0] * 4))
        with pytest.raises(DimensionMismatchError):
            combine(a, b)


# =============================================================================
# Optimizer State and Stats Merging
# =============================================================================

class TestMergedExtras:

    def test_optimizer_state_averaged(self):
        def aggregator(momentum):
            return TorchOptimizerStateAggregator.from_state_dict(
                {
                    "state": {0: {"momentum_buffer": torch.tensor(momentum)}},
                    "param_groups": [{"lr": 0.1, "params": [0]}],
                }
            )

        results = [
            WorkerResult(torch.zeros(2), optimizer_aggregator=aggregator([1.0, 2.0])),
            WorkerResult(torch.zeros(2), optimizer_aggregator=aggregator([3.0, 6.0])),
        ]
        _, state, _ = _left_fold(results).average()
        assert torch.allclose(state["state"][0]["momentum_buffer"], torch.tensor([2.0, 4.0]))
        assert state["param_groups"][0]["lr"] == 0.1

    def test_one_sided_optimizer_state_kept(self):
        agg = TorchOptimizerStateAggregator.from_state_dict(
            {"state": {}, "param_groups": [{"lr": 0.1, "params": [0]}]}
        )
        acc = _left_fold([_result([1.0]), WorkerResult(torch.ones(1, dtype=torch.float64), agg)])
        assert acc.optimizer_aggregator is agg

    def test_worker_stats_merged(self):
        results = [
            _result([1.0], stats=WorkerStats(init_durations=[0.1], fit_durations=[0.2, 0.3], num_examples=4)),
            _result([1.0], stats=WorkerStats(init_durations=[0.1], fit_durations=[0.4], num_examples=2)),
            _result([1.0]),
        ]
        stats = _left_fold(results).stats
        assert stats.num_workers == 2
        assert stats.num_batches == 3
        assert stats.num_examples == 6
