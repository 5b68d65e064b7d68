"""
paramavg Master - Synchronous Parameter Averaging Training

ParameterAveragingTrainingMaster drives data-parallel training of one model
over a distributed dataset. Training proceeds in rounds; in each round every
worker starts from the same broadcast copy of the global model, trains locally
on its shard, and the master replaces the global model with the element-wise
average of the workers' parameters (and, optionally, optimizer state).

## Training Pass

```
execute_training(model, dataset)
│
├── persist + count the dataset
├── objects_per_round(config)          (planner)
├── split_into_rounds(...)             (planner, randomized)
│
└── for each round, strictly in order:
    ├── repartition_if_required        (repartition policy)
    ├── get_worker_instance(model)     (snapshot + broadcast)
    ├── map_partitions(ExecuteWorkerFn) (one WorkerResult per non-empty shard)
    ├── reduce(add, combine, empty)    (aggregation monoid)
    ├── average + model.apply_average  (single writer)
    └── listeners.on_round_complete(model, iteration_count)
```

A round's snapshot is taken after the previous round has been applied, so
round k+1 always starts from the average produced by round k.

## Comparison with collective averaging

Collective schemes average models with ``all_reduce`` across
torch.distributed ranks inside the training loop. Here the same averaging is
done by a central master over a partitioned dataset: workers never talk to
each other, and the reduction is an explicit add/combine fold the runtime can
evaluate as any tree.

## Failure Behavior

Any exception (invalid data, dimension mismatch, empty round, worker error)
propagates out of execute_training and aborts the pass. Nothing is retried.
The global model is only written after a round's aggregate has been fully
validated, so a failed round leaves it untouched.

## Instrumentation

With ``collect_stats`` enabled a StatsCollector observes every phase boundary
and get_training_stats() returns the report. Otherwise a NoOpObserver is used.
"""

import logging
from typing import Iterable, List, Optional

from .aggregation import AggregationAccumulator, add, combine
from .config import TrainingConfiguration
from .errors import EmptyAggregationError
from .listeners import RoundListener
from .model import ModelTopology, TrainableModel
from .planner import objects_per_round, split_into_rounds
from .repartition import repartition_if_required
from .runtime import DistributedDataset, LocalRuntime, Runtime
from .stats import NoOpObserver, StatsCollector, TrainingObserver, TrainingStats
from .utils import LogModule
from .worker import ExecuteWorkerFn, ParameterAveragingWorker, WorkerConfiguration

logger = logging.getLogger(__name__)


class ParameterAveragingTrainingMaster(LogModule):
    """
    Orchestrates round-based synchronous parameter averaging.

    Args:
        config: Validated TrainingConfiguration
        runtime: Distributed runtime (defaults to a LocalRuntime)
        listeners: RoundListeners notified after every applied round
        seed: Seed for the randomized round split (None: nondeterministic)

    Example:
        >>> config = TrainingConfiguration.builder(4, 1).averaging_frequency(5).build()
        >>> master = ParameterAveragingTrainingMaster(config, seed=0)
        >>> master.execute_training(model, dataset)
    """

    def __init__(
        self,
        config: TrainingConfiguration,
        runtime: Optional[Runtime] = None,
        listeners: Optional[Iterable[RoundListener]] = None,
        seed: Optional[int] = None,
    ):
        self.config = config
        self.runtime = runtime if runtime is not None else LocalRuntime()
        self.listeners: List[RoundListener] = list(listeners or [])
        self.seed = seed
        self.observer: TrainingObserver = (
            StatsCollector() if config.collect_stats else NoOpObserver()
        )

    def add_listener(self, listener: RoundListener) -> None:
        self.listeners.append(listener)

    def set_listeners(self, listeners: Iterable[RoundListener]) -> None:
        self.listeners = list(listeners)

    def set_collect_training_stats(self, collect: bool) -> None:
        """Turn phase timing on or off. Turning it on starts a fresh report."""
        if collect:
            if not isinstance(self.observer, StatsCollector):
                self.observer = StatsCollector()
        else:
            self.observer = NoOpObserver()

    @property
    def is_collect_training_stats(self) -> bool:
        return isinstance(self.observer, StatsCollector)

    def get_training_stats(self) -> Optional[TrainingStats]:
        return self.observer.build()

    def get_worker_instance(self, model: TrainableModel) -> ParameterAveragingWorker:
        """
        Snapshot the global model, broadcast it and return the worker that
        every partition of the next round will run.
        """
        self.observer.on_broadcast_start()
        broadcast = self.runtime.broadcast(model.snapshot())
        self.observer.on_broadcast_end()

        worker_config = WorkerConfiguration(
            is_graph=model.topology is ModelTopology.GRAPH,
            batch_size_per_worker=self.config.batch_size_per_worker,
            averaging_frequency=self.config.averaging_frequency,
            prefetch_batches=self.config.prefetch_batches,
            collect_stats=self.config.collect_stats,
        )
        return ParameterAveragingWorker(
            broadcast, self.config.save_optimizer_state, worker_config
        )

    def execute_training(self, model: TrainableModel, dataset) -> TrainableModel:
        """
        Train ``model`` over ``dataset`` in sequential averaging rounds.

        Args:
            model: Global model; updated in place after every round
            dataset: DistributedDataset, or any iterable / torch Dataset of
                stored objects, which is parallelized through the runtime

        Returns:
            TrainableModel: The same model, trained

        Raises:
            DimensionMismatchError: If worker results have mismatched shapes
            EmptyAggregationError: If a round produced no worker results
        """
        if not isinstance(dataset, DistributedDataset):
            dataset = self.runtime.parallelize(dataset)

        for listener in self.listeners:
            listener.attach(self, model)

        self.observer.on_fit_start()
        dataset = dataset.persist()
        total_object_count = dataset.count()
        objects_in_round = objects_per_round(self.config)

        self.observer.on_split_start()
        rounds = split_into_rounds(
            dataset, total_object_count, objects_in_round, seed=self.seed
        )
        self.observer.on_split_end()

        for i, round_data in enumerate(rounds):
            self._do_iteration(model, round_data, i, len(rounds), total_object_count)

        self.observer.on_fit_end(total_object_count)
        return model

    def _do_iteration(
        self,
        model: TrainableModel,
        round_data: DistributedDataset,
        split_num: int,
        num_splits: int,
        total_object_count: int,
    ) -> None:
        logger.info(
            "Starting training of round %d of %d. batch_size_per_worker=%d, "
            "averaging_frequency=%d, total_objects=%d. Configured for %d workers",
            split_num + 1,
            num_splits,
            self.config.batch_size_per_worker,
            self.config.averaging_frequency,
            total_object_count,
            self.config.num_workers,
        )
        self.observer.on_round_start()

        round_data = repartition_if_required(
            round_data,
            self.config.repartition_policy,
            self.config.num_workers,
            observer=self.observer,
        )

        worker = self.get_worker_instance(model)
        try:
            self.observer.on_execute_start()
            results = round_data.map_partitions(ExecuteWorkerFn(worker))
            self.observer.on_execute_end()

            self.observer.on_aggregate_start()
            aggregate = results.reduce(add, combine, AggregationAccumulator.empty)
            self.observer.on_aggregate_end()
        finally:
            worker.broadcast.destroy()

        self._process_results(model, aggregate)

        for listener in self.listeners:
            listener.on_round_complete(model, model.iteration_count)

        self.observer.on_round_end(round_data.num_partitions)
        logger.info("Completed training of round %d of %d", split_num + 1, num_splits)

    def _process_results(self, model: TrainableModel, aggregate: AggregationAccumulator) -> None:
        self.observer.on_apply_start()
        if aggregate.is_empty:
            raise EmptyAggregationError(
                "No worker results were produced for this round; "
                "check that the round's partitions are not all empty"
            )

        parameters, optimizer_state, score = aggregate.average()
        if not self.config.save_optimizer_state:
            optimizer_state = None
        model.apply_average(parameters, optimizer_state, score)

        self.observer.add_worker_stats(aggregate.stats)
        self.observer.on_apply_end()

        logger.debug(
            "Averaged %d worker results; score %.6f",
            aggregate.aggregation_count,
            score,
        )

    def __config__(self, remove_keys=None):
        config = self.config.__config__()
        config["runtime"] = type(self.runtime).__name__
        config["seed"] = self.seed
        return config
