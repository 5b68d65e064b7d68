"""
paramavg Aggregation - Worker Results and the Averaging Monoid

Every worker emits one WorkerResult per shard per round. The distributed
runtime folds those results into a single AggregationAccumulator using two
functions supplied by the master:

- ``add(acc, result)``: fold one more WorkerResult into an accumulator
- ``combine(acc_a, acc_b)``: merge two partial accumulators, typically built on
  different execution units

Together with the explicit empty accumulator these form a commutative,
associative monoid over (parameter sum, optimizer state, score sum, count,
stats). Any reduction tree shape (left fold, balanced tree, per-partition
folds followed by a combine tree) gives the same sum and the same count, up to
floating-point summation order. That tolerance is accepted; it is not a
correctness violation.

## Mathematical Operation

After the reduction the master averages:

```
averaged_params = parameter_sum / aggregation_count
score           = score_sum / aggregation_count
```

``aggregation_count`` is the total of the folded results' own counts, so the
division is correct whatever the merge tree looked like.

## Empty Accumulator

An accumulator starts as an explicit empty value (``parameter_sum is None``),
not as a zero vector, so nothing needs to know the parameter count up front.
The first real result initializes the sum by taking ownership of the worker's
tensor (no copy). Later results are added in place. Results are consumed
exactly once, so taking ownership is safe.

## Failure Behavior

Merging vectors of different length raises DimensionMismatchError before any
field of the accumulator is touched. Workers then trained against
incompatible snapshots, and partial-vector averaging would silently corrupt
the model.

## Concurrency

``add`` and ``combine`` mutate their left argument. The runtime must give each
partial accumulator to exactly one reducing task until it is merged; no lock
is needed beyond that.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from .errors import DimensionMismatchError, EmptyAggregationError
from .optim import OptimizerStateAggregator
from .stats import WorkerStats


@dataclass(frozen=True)
class WorkerResult:
    """
    Output of one worker's local training run over one shard.

    Attributes:
        parameter_sum: Flat parameter vector (sum over aggregation_count models)
        optimizer_aggregator: Mergeable optimizer state, None when not saved
        score_sum: Sum of final losses over aggregation_count models
        aggregation_count: Number of models summed into this result (>= 1)
        worker_stats: Timing collected inside the worker, if enabled
    """

    parameter_sum: torch.Tensor
    optimizer_aggregator: Optional[OptimizerStateAggregator] = None
    score_sum: float = 0.0
    aggregation_count: int = 1
    worker_stats: Optional[WorkerStats] = None

    def __post_init__(self):
        if self.aggregation_count < 1:
            raise ValueError(
                f"aggregation_count must be >= 1, got {self.aggregation_count}"
            )


@dataclass
class AggregationAccumulator:
    """
    Partial (or final) aggregate of WorkerResults.

    Use AggregationAccumulator.empty() as the starting value of every fold.
    """

    parameter_sum: Optional[torch.Tensor] = None
    optimizer_aggregator: Optional[OptimizerStateAggregator] = None
    score_sum: float = 0.0
    aggregation_count: int = 0
    stats: Optional[WorkerStats] = None

    @classmethod
    def empty(cls) -> "AggregationAccumulator":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.parameter_sum is None

    def average(self) -> Tuple[torch.Tensor, Optional[object], float]:
        """
        Divide the accumulated sums by the aggregation count.

        Returns:
            tuple: (averaged parameters, averaged optimizer state or None, score)

        Raises:
            EmptyAggregationError: If nothing was aggregated
        """
        if self.is_empty or self.aggregation_count == 0:
            raise EmptyAggregationError(
                "Round produced no worker results; nothing to average"
            )

        params = self.parameter_sum / self.aggregation_count
        optimizer_state = (
            self.optimizer_aggregator.get_state()
            if self.optimizer_aggregator is not None
            else None
        )
        score = self.score_sum / self.aggregation_count
        return params, optimizer_state, score


def _merge_into(
    acc: AggregationAccumulator,
    parameter_sum: torch.Tensor,
    optimizer_aggregator: Optional[OptimizerStateAggregator],
    score_sum: float,
    aggregation_count: int,
    stats: Optional[WorkerStats],
) -> AggregationAccumulator:
    if acc.is_empty:
        # Take ownership of the incoming vector instead of copying it
        acc.parameter_sum = parameter_sum
        acc.optimizer_aggregator = optimizer_aggregator
        acc.score_sum = score_sum
        acc.aggregation_count = aggregation_count
        acc.stats = stats
        return acc

    if acc.parameter_sum.shape != parameter_sum.shape:
        raise DimensionMismatchError(acc.parameter_sum.shape, parameter_sum.shape)

    # Merge optimizer state first: it can still fail on mismatched state shapes
    if acc.optimizer_aggregator is not None and optimizer_aggregator is not None:
        merged_optimizer = acc.optimizer_aggregator.merge(optimizer_aggregator)
    else:
        merged_optimizer = acc.optimizer_aggregator or optimizer_aggregator

    acc.parameter_sum.add_(parameter_sum)
    acc.optimizer_aggregator = merged_optimizer
    acc.score_sum += score_sum
    acc.aggregation_count += aggregation_count

    if acc.stats is None:
        acc.stats = stats
    elif stats is not None:
        acc.stats = acc.stats.merge(stats)

    return acc


def add(acc: AggregationAccumulator, result: WorkerResult) -> AggregationAccumulator:
    """
    Fold one WorkerResult into ``acc`` and return it.

    Raises:
        DimensionMismatchError: If the result's vector length differs
    """
    return _merge_into(
        acc,
        result.parameter_sum,
        result.optimizer_aggregator,
        result.score_sum,
        result.aggregation_count,
        result.worker_stats,
    )


def combine(acc_a: AggregationAccumulator, acc_b: AggregationAccumulator) -> AggregationAccumulator:
    """
    Merge partial accumulator ``acc_b`` into ``acc_a`` and return the result.

    Either side may be empty; merging with an empty accumulator returns the
    other side unchanged.

    Raises:
        DimensionMismatchError: If the two accumulated vectors differ in length
    """
    if acc_b.is_empty:
        return acc_a
    if acc_a.is_empty:
        return acc_b
    return _merge_into(
        acc_a,
        acc_b.parameter_sum,
        acc_b.optimizer_aggregator,
        acc_b.score_sum,
        acc_b.aggregation_count,
        acc_b.stats,
    )
