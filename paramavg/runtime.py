"""
paramavg Runtime - Distributed Collection and Broadcast Collaborators

The training master does not partition data or schedule tasks itself. It
drives a distributed runtime through a small interface:

| Operation                          | Used by the master for                 |
|------------------------------------|----------------------------------------|
| ``persist()``                      | reuse the dataset across all rounds    |
| ``count()``                        | round sizing                           |
| ``random_split(weights, seed)``    | cutting the dataset into rounds        |
| ``repartition(n)``                 | evening out worker load                |
| ``map_partitions(fn)``             | running one worker per shard           |
| ``reduce(add, combine, zero)``     | folding WorkerResults into one value   |
| ``Runtime.broadcast(value)``       | shipping the model snapshot once       |

## LocalRuntime

Single-machine implementation. A dataset is a list of partitions, each a list
of stored objects. ``map_partitions`` runs one task per partition on a
``ThreadPoolExecutor``; torch releases the GIL inside its kernels so worker
training overlaps. ``reduce`` folds every partition with ``add`` in its own
task and then merges the partial accumulators pairwise in a balanced
``combine`` tree. Each partial accumulator belongs to exactly one task until
it is merged.

```python
runtime = LocalRuntime(max_workers=4)
data = runtime.parallelize(stored_objects, num_partitions=4)
rounds = data.random_split([0.5, 0.5], seed=0)
```

Exceptions raised inside a partition task propagate to the caller; nothing
is retried.
"""

import copy
import logging
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import torch
from torch.utils.data import default_collate

logger = logging.getLogger(__name__)


class BroadcastHandle:
    """Read-only handle to a value distributed to every worker."""

    def __init__(self, value):
        self._value = value
        self._destroyed = False

    @property
    def value(self):
        if self._destroyed:
            raise RuntimeError("Broadcast value was destroyed")
        return self._value

    def destroy(self) -> None:
        self._value = None
        self._destroyed = True


class DistributedDataset(ABC):
    """Partitioned collection of stored training objects."""

    @property
    @abstractmethod
    def num_partitions(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def persist(self) -> "DistributedDataset":
        raise NotImplementedError

    @abstractmethod
    def count(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def random_split(self, weights: Sequence[float], seed: Optional[int] = None) -> List["DistributedDataset"]:
        raise NotImplementedError

    @abstractmethod
    def repartition(self, num_partitions: int) -> "DistributedDataset":
        raise NotImplementedError

    @abstractmethod
    def map_partitions(self, fn: Callable[[Iterator], Iterable]) -> "DistributedDataset":
        raise NotImplementedError

    @abstractmethod
    def reduce(self, add: Callable, combine: Callable, zero: Callable[[], object]):
        raise NotImplementedError

    @abstractmethod
    def collect(self) -> list:
        raise NotImplementedError


class Runtime(ABC):
    """Creates distributed datasets and broadcast values."""

    @abstractmethod
    def parallelize(self, data, num_partitions: Optional[int] = None) -> DistributedDataset:
        raise NotImplementedError

    @abstractmethod
    def broadcast(self, value) -> BroadcastHandle:
        raise NotImplementedError


class LocalDataset(DistributedDataset):
    """
    In-memory DistributedDataset backed by a list of partitions.

    Args:
        partitions: One list of stored objects per partition
        runtime: LocalRuntime whose thread pool executes partition tasks
    """

    def __init__(self, partitions: List[list], runtime: "LocalRuntime"):
        self.partitions = [list(partition) for partition in partitions]
        self.runtime = runtime
        self.persisted = False

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    def persist(self) -> "LocalDataset":
        # Partitions are already materialized lists
        self.persisted = True
        return self

    def count(self) -> int:
        return sum(len(partition) for partition in self.partitions)

    def collect(self) -> list:
        return [obj for partition in self.partitions for obj in partition]

    def random_split(self, weights: Sequence[float], seed: Optional[int] = None) -> List["LocalDataset"]:
        """
        Randomly assign every object to one of ``len(weights)`` datasets.

        All objects are shuffled together with one permutation and the
        shuffled order is cut at the cumulative weight boundaries, so split
        sizes are exact up to rounding: with uniform weights every split holds
        ``total // len(weights)`` or one more object. Partition structure is
        preserved: partition i of every split holds the objects drawn from
        partition i of this dataset, in their stored order.
        """
        weights = np.asarray(weights, dtype=np.float64)
        if weights.ndim != 1 or weights.size == 0 or np.any(weights < 0) or weights.sum() <= 0:
            raise ValueError(f"Invalid split weights: {weights.tolist()}")
        probabilities = weights / weights.sum()

        total = sum(len(partition) for partition in self.partitions)
        boundaries = np.rint(np.cumsum(probabilities) * total).astype(np.int64)
        boundaries[-1] = total

        # Position of each flat object index in the shuffled order -> split index
        rng = np.random.default_rng(seed)
        positions = np.empty(total, dtype=np.int64)
        positions[rng.permutation(total)] = np.arange(total)
        assignments = np.searchsorted(boundaries, positions, side="right")

        splits = [[[] for _ in self.partitions] for _ in range(len(probabilities))]
        flat_index = 0
        for p_index, partition in enumerate(self.partitions):
            for obj in partition:
                splits[assignments[flat_index]][p_index].append(obj)
                flat_index += 1

        return [LocalDataset(partitions, self.runtime) for partitions in splits]

    def repartition(self, num_partitions: int) -> "LocalDataset":
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
        objects = self.collect()
        return LocalDataset(
            [objects[i::num_partitions] for i in range(num_partitions)], self.runtime
        )

    def map_partitions(self, fn: Callable[[Iterator], Iterable]) -> "LocalDataset":
        results = self.runtime.run_tasks(
            [lambda partition=partition: list(fn(iter(partition))) for partition in self.partitions]
        )
        return LocalDataset(results, self.runtime)

    def reduce(self, add: Callable, combine: Callable, zero: Callable[[], object]):
        """
        Fold every partition with ``add`` then merge partials with ``combine``.

        ``zero`` is called once per partition, so every fold starts from its
        own fresh value.
        """

        def fold(partition):
            acc = zero()
            for item in partition:
                acc = add(acc, item)
            return acc

        partials = self.runtime.run_tasks(
            [lambda partition=partition: fold(partition) for partition in self.partitions]
        )
        if not partials:
            return zero()
        return tree_combine(partials, combine)


def tree_combine(values: list, combine: Callable):
    """Merge ``values`` pairwise, level by level, into a single value."""
    level = list(values)
    while len(level) > 1:
        merged = []
        for i in range(0, len(level) - 1, 2):
            merged.append(combine(level[i], level[i + 1]))
        if len(level) % 2 == 1:
            merged.append(level[-1])
        level = merged
    return level[0]


class LocalRuntime(Runtime):
    """
    Single-machine runtime running partition tasks on a thread pool.

    Args:
        max_workers: Thread pool size (None: one thread per partition, capped
            at the CPU count)
        default_partitions: Partition count used by parallelize() when none is
            given (None: CPU count)
    """

    def __init__(self, max_workers: Optional[int] = None, default_partitions: Optional[int] = None):
        self.max_workers = max_workers
        self.default_partitions = default_partitions

    def run_tasks(self, tasks: List[Callable[[], object]]) -> list:
        if not tasks:
            return []
        max_workers = self.max_workers or min(len(tasks), os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(task) for task in tasks]
            return [future.result() for future in futures]

    def parallelize(self, data, num_partitions: Optional[int] = None) -> LocalDataset:
        """
        Slice ``data`` into contiguous partitions.

        Accepts a LocalDataset (returned as is), any sequence, or any iterable.
        """
        if isinstance(data, LocalDataset):
            return data
        objects = list(data)
        if num_partitions is None:
            num_partitions = self.default_partitions or os.cpu_count() or 1
        num_partitions = max(1, min(num_partitions, len(objects))) if objects else 1
        bounds = np.linspace(0, len(objects), num_partitions + 1).astype(int)
        partitions = [objects[bounds[i]:bounds[i + 1]] for i in range(num_partitions)]
        logger.debug("Parallelized %d objects into %d partitions", len(objects), num_partitions)
        return LocalDataset(partitions, self)

    def from_torch_dataset(
        self,
        dataset: torch.utils.data.Dataset,
        examples_per_object: int = 1,
        num_partitions: Optional[int] = None,
    ) -> LocalDataset:
        """
        Group the examples of a map-style torch Dataset into stored objects.

        Consecutive examples are collated (``default_collate``) into objects
        of ``examples_per_object`` examples each, with a leading example
        dimension. The last object may be smaller.
        """
        if examples_per_object < 1:
            raise ValueError(f"examples_per_object must be >= 1, got {examples_per_object}")
        objects = [
            default_collate([dataset[i] for i in range(start, min(start + examples_per_object, len(dataset)))])
            for start in range(0, len(dataset), examples_per_object)
        ]
        return self.parallelize(objects, num_partitions)

    def broadcast(self, value) -> BroadcastHandle:
        # Copied once here; tasks only ever read the handle
        return BroadcastHandle(copy.deepcopy(value))
