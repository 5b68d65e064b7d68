"""
paramavg - Synchronous Parameter Averaging for Data-Parallel Training

This package trains one model over a partitioned dataset by repeated rounds of
local training followed by central parameter averaging.

## Architecture Overview

1. **ParameterAveragingTrainingMaster** (master.py): round orchestration
   - Sizes rounds and splits the dataset into them
   - Broadcasts a snapshot of the global model at the start of every round
   - Reduces worker results and writes the average back into the model

2. **Workers** (worker.py): local training on one shard
   - Private copy of the snapshot, one optimizer step per minibatch
   - Exactly one WorkerResult per non-empty shard

3. **Aggregation** (aggregation.py): the add/combine averaging monoid
   - Associative and commutative, so the runtime may fold in any tree shape

4. **Runtime** (runtime.py): the distributed collection interface
   - LocalRuntime runs partitions on a thread pool on one machine

## Round Data Flow

```
execute_training(model, dataset) [master.py]
    ↓
objects_per_round(config) → split_into_rounds(...) [planner.py]
    ↓
for each round:
    repartition_if_required(...) [repartition.py]
        ↓
    model.snapshot() → runtime.broadcast(snapshot) [model.py, runtime.py]
        ↓
    dataset.map_partitions(ExecuteWorkerFn(worker)) [worker.py]
        ↓
    results.reduce(add, combine, AggregationAccumulator.empty) [aggregation.py]
        ↓
    model.apply_average(params, optimizer_state, score) [model.py]
        ↓
    listener.on_round_complete(model, iteration_count) [listeners.py]
```

## Usage Pattern

```python
from paramavg import (
    LocalRuntime,
    NetworkModel,
    ParameterAveragingTrainingMaster,
    TrainingConfiguration,
)

config = (
    TrainingConfiguration.builder(num_workers=4, records_per_stored_object=1)
    .batch_size_per_worker(32)
    .averaging_frequency(5)
    .build()
)
runtime = LocalRuntime()
dataset = runtime.from_torch_dataset(train_dataset, num_partitions=4)

model = NetworkModel(LossWrapper(backbone), optim_spec=OptimSpec(torch.optim.SGD, lr=0.1))
master = ParameterAveragingTrainingMaster(config, runtime=runtime)
master.execute_training(model, dataset)
```

The wrapped module's forward takes a batch and returns a scalar loss.

## File Organization

- master.py: ParameterAveragingTrainingMaster
- config.py: TrainingConfiguration, builder and defaults
- planner.py: round sizing and splitting
- repartition.py: RepartitionPolicy
- aggregation.py: WorkerResult, AggregationAccumulator, add, combine
- worker.py: per-shard local training
- model.py: TrainableModel, NetworkModel, GraphModel, ModelSnapshot
- optim.py: OptimSpec and mergeable optimizer state
- runtime.py: DistributedDataset, Runtime, LocalRuntime
- listeners.py: progress bar, CSV and Weights & Biases round listeners
- stats.py: phase timing instrumentation
- errors.py: exception hierarchy
- utils.py: run configuration extraction
"""

from .aggregation import AggregationAccumulator, WorkerResult
from .config import TrainingConfiguration, TrainingConfigurationBuilder, TrainingConstants
from .errors import (
    DimensionMismatchError,
    EmptyAggregationError,
    InvalidConfigurationError,
    ParameterAveragingError,
    UnknownRepartitionPolicyError,
)
from .listeners import CSVListener, ProgressListener, RoundListener, WandbListener
from .master import ParameterAveragingTrainingMaster
from .model import GraphModel, ModelSnapshot, ModelTopology, NetworkModel, TrainableModel
from .optim import OptimSpec, OptimizerStateAggregator, TorchOptimizerStateAggregator
from .repartition import RepartitionPolicy
from .runtime import BroadcastHandle, DistributedDataset, LocalDataset, LocalRuntime, Runtime
from .stats import StatsCollector, TrainingStats, WorkerStats

__all__ = [
    "AggregationAccumulator",
    "BroadcastHandle",
    "CSVListener",
    "DimensionMismatchError",
    "DistributedDataset",
    "EmptyAggregationError",
    "GraphModel",
    "InvalidConfigurationError",
    "LocalDataset",
    "LocalRuntime",
    "ModelSnapshot",
    "ModelTopology",
    "NetworkModel",
    "OptimSpec",
    "OptimizerStateAggregator",
    "ParameterAveragingError",
    "ParameterAveragingTrainingMaster",
    "ProgressListener",
    "RepartitionPolicy",
    "RoundListener",
    "Runtime",
    "StatsCollector",
    "TorchOptimizerStateAggregator",
    "TrainableModel",
    "TrainingConfiguration",
    "TrainingConfigurationBuilder",
    "TrainingConstants",
    "TrainingStats",
    "UnknownRepartitionPolicyError",
    "WandbListener",
    "WorkerResult",
    "WorkerStats",
]
