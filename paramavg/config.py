"""
paramavg Config - Training Configuration and Builder

This module holds the immutable configuration that drives the parameter
averaging training master. It is validated eagerly: an invalid value fails
when the configuration is constructed, never halfway through a training pass.

## Key Components

### TrainingConstants
Named defaults for every optional setting, documented in place.

### TrainingConfiguration
Frozen dataclass carrying every setting the master, the split planner and the
workers need. Because it is frozen and made only of plain values it pickles
cleanly and is safe to share with worker tasks.

### TrainingConfigurationBuilder
Fluent construction surface. The two required values (number of workers and
records per stored object) are given up front, everything else defaults:

```python
config = (
    TrainingConfiguration.builder(num_workers=4, records_per_stored_object=1)
    .batch_size_per_worker(32)
    .averaging_frequency(10)
    .repartition_policy("when_partition_count_differs")
    .collect_stats(True)
    .build()
)
```

## Records per stored object

Stored objects in the distributed dataset are either single examples (the
"in line" pipeline case, records_per_stored_object=1) or pre-batched objects
holding N examples each (the preprocessed pipeline case). The split planner
sizes rounds differently for the two cases; see planner.objects_per_round().
"""

from dataclasses import dataclass

from .errors import InvalidConfigurationError
from .repartition import RepartitionPolicy
from .utils import LogModule


class TrainingConstants:
    """
    Named defaults for parameter averaging training.
    """

    DEFAULT_BATCH_SIZE_PER_WORKER = 16
    """
    Number of examples in each minibatch a worker fits.
    """

    DEFAULT_AVERAGING_FREQUENCY = 5
    """
    Number of minibatches each worker fits between two parameter averagings.

    Too low (such as 1) generates a lot of network traffic since every round
    ships the full model both ways. Too high (well beyond 20) lets worker
    models drift apart and hurts convergence.
    """

    DEFAULT_PREFETCH_BATCHES = 0
    """
    Number of minibatches a worker prepares ahead on a background thread.
    0 disables prefetching.
    """

    DEFAULT_SAVE_OPTIMIZER_STATE = True
    """
    Whether optimizer state (momentum, adaptive moments, ...) is averaged and
    redistributed along with the parameters.

    This can double the traffic in each direction but is more stable for
    adaptive optimizers. When disabled workers start every round with a fresh
    optimizer.
    """

    DEFAULT_REPARTITION_POLICY = RepartitionPolicy.NEVER
    """
    Repartitioning costs a full shuffle of the round's data, so it is off
    unless asked for.
    """

    DEFAULT_COLLECT_STATS = False


@dataclass(frozen=True)
class TrainingConfiguration(LogModule):
    """
    Immutable, validated configuration for ParameterAveragingTrainingMaster.

    Attributes:
        num_workers: Number of parallel workers in the cluster (>= 1)
        records_per_stored_object: Examples in each stored dataset object (>= 1)
        batch_size_per_worker: Examples per minibatch on each worker (>= 1)
        averaging_frequency: Minibatches per worker between averagings (>= 1)
        prefetch_batches: Minibatches to prefetch asynchronously (>= 0)
        save_optimizer_state: Average and redistribute optimizer state
        repartition_policy: When to redistribute round data across workers
        collect_stats: Record phase timings for the whole pass

    Raises:
        InvalidConfigurationError: On construction with an out-of-range value
    """

    num_workers: int
    records_per_stored_object: int
    batch_size_per_worker: int = TrainingConstants.DEFAULT_BATCH_SIZE_PER_WORKER
    averaging_frequency: int = TrainingConstants.DEFAULT_AVERAGING_FREQUENCY
    prefetch_batches: int = TrainingConstants.DEFAULT_PREFETCH_BATCHES
    save_optimizer_state: bool = TrainingConstants.DEFAULT_SAVE_OPTIMIZER_STATE
    repartition_policy: RepartitionPolicy = TrainingConstants.DEFAULT_REPARTITION_POLICY
    collect_stats: bool = TrainingConstants.DEFAULT_COLLECT_STATS

    def __post_init__(self):
        _require_positive("num_workers", self.num_workers, "number of workers")
        _require_positive(
            "records_per_stored_object",
            self.records_per_stored_object,
            "stored object size",
        )
        _require_positive(
            "batch_size_per_worker", self.batch_size_per_worker, "batch size per worker"
        )
        _require_positive(
            "averaging_frequency", self.averaging_frequency, "averaging frequency"
        )
        if not isinstance(self.prefetch_batches, int) or self.prefetch_batches < 0:
            raise InvalidConfigurationError(
                f"Invalid number of prefetch batches: {self.prefetch_batches!r} (must be >= 0)"
            )

        # Frozen dataclass: normalize the policy through object.__setattr__
        object.__setattr__(
            self, "repartition_policy", RepartitionPolicy.parse(self.repartition_policy)
        )

    @classmethod
    def builder(
        cls, num_workers: int, records_per_stored_object: int
    ) -> "TrainingConfigurationBuilder":
        return TrainingConfigurationBuilder(num_workers, records_per_stored_object)

    def __config__(self, remove_keys=None):
        config = super().__config__(remove_keys)
        config["repartition_policy"] = self.repartition_policy.value
        return config


def _require_positive(name: str, value, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidConfigurationError(
            f"Invalid {label}: {value!r} (must be >= 1)"
        )


class TrainingConfigurationBuilder:
    """
    Fluent builder for TrainingConfiguration.

    Required values are validated in the constructor and averaging frequency
    is validated as soon as it is set, so a bad value surfaces at the call that
    introduced it. build() validates the complete configuration again.
    """

    def __init__(self, num_workers: int, records_per_stored_object: int):
        _require_positive("num_workers", num_workers, "number of workers")
        _require_positive(
            "records_per_stored_object", records_per_stored_object, "stored object size"
        )
        self._num_workers = num_workers
        self._records_per_stored_object = records_per_stored_object
        self._batch_size_per_worker = TrainingConstants.DEFAULT_BATCH_SIZE_PER_WORKER
        self._averaging_frequency = TrainingConstants.DEFAULT_AVERAGING_FREQUENCY
        self._prefetch_batches = TrainingConstants.DEFAULT_PREFETCH_BATCHES
        self._save_optimizer_state = TrainingConstants.DEFAULT_SAVE_OPTIMIZER_STATE
        self._repartition_policy = TrainingConstants.DEFAULT_REPARTITION_POLICY
        self._collect_stats = TrainingConstants.DEFAULT_COLLECT_STATS

    def batch_size_per_worker(self, batch_size: int) -> "TrainingConfigurationBuilder":
        self._batch_size_per_worker = batch_size
        return self

    def averaging_frequency(self, frequency: int) -> "TrainingConfigurationBuilder":
        _require_positive("averaging_frequency", frequency, "averaging frequency")
        self._averaging_frequency = frequency
        return self

    def worker_prefetch_batches(self, num_batches: int) -> "TrainingConfigurationBuilder":
        self._prefetch_batches = num_batches
        return self

    def save_optimizer_state(self, save: bool) -> "TrainingConfigurationBuilder":
        self._save_optimizer_state = bool(save)
        return self

    def repartition_policy(self, policy) -> "TrainingConfigurationBuilder":
        self._repartition_policy = RepartitionPolicy.parse(policy)
        return self

    def collect_stats(self, collect: bool) -> "TrainingConfigurationBuilder":
        self._collect_stats = bool(collect)
        return self

    def build(self) -> TrainingConfiguration:
        return TrainingConfiguration(
            num_workers=self._num_workers,
            records_per_stored_object=self._records_per_stored_object,
            batch_size_per_worker=self._batch_size_per_worker,
            averaging_frequency=self._averaging_frequency,
            prefetch_batches=self._prefetch_batches,
            save_optimizer_state=self._save_optimizer_state,
            repartition_policy=self._repartition_policy,
            collect_stats=self._collect_stats,
        )
