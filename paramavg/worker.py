"""
paramavg Worker - Local Training on One Shard

Each round the runtime calls ExecuteWorkerFn once per partition of the round's
data. The function builds a private model from the broadcast snapshot, fits
every minibatch of its shard, and emits exactly one WorkerResult (or nothing,
for an empty shard).

## Worker Flow

```
shard objects → rebatch(batch_size) → [PrefetchIterator] → fit each minibatch
                                                             │
                                  last minibatch ────────────┘
                                        │
                                  WorkerResult(params, optimizer state,
                                               final loss, count=1, stats)
```

One training step is the usual torch sequence:

```python
optimizer.zero_grad()
loss = compute_loss(topology, module, minibatch)
loss.backward()
optimizer.step()
```

## Rebatching

Stored objects carry a leading example dimension, either one example
(``records_per_stored_object == 1``) or a pre-batched block. ``rebatch``
re-slices the stream into minibatches of exactly ``batch_size_per_worker``
examples by concatenating and splitting along dimension 0; only the final
minibatch of a shard may be smaller.

## Prefetching

With ``prefetch_batches > 0`` minibatches are prepared on a background thread
and handed over through a bounded ``queue.Queue``. Errors raised while
preparing batches are re-raised in the training thread. The shard function
closes the prefetcher when it finishes or fails, which stops the background
thread even if it is waiting on a full queue.
"""

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import torch
from torch.nn.utils import parameters_to_vector

from .aggregation import WorkerResult
from .model import ModelSnapshot, ModelTopology, as_graph_inputs, compute_loss, move_to_device
from .optim import TorchOptimizerStateAggregator
from .runtime import BroadcastHandle
from .stats import WorkerStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfiguration:
    """
    Settings every worker receives for one round.

    Attributes:
        is_graph: Present batches to the model as named inputs
        batch_size_per_worker: Examples per fitted minibatch
        averaging_frequency: Minibatches per averaging period
        prefetch_batches: Minibatches to prepare ahead (0 disables)
        collect_stats: Record per-minibatch timings
    """

    is_graph: bool
    batch_size_per_worker: int
    averaging_frequency: int
    prefetch_batches: int = 0
    collect_stats: bool = False


def _first_tensor(obj) -> torch.Tensor:
    if isinstance(obj, torch.Tensor):
        return obj
    if isinstance(obj, dict):
        return _first_tensor(next(iter(obj.values())))
    if isinstance(obj, (tuple, list)):
        return _first_tensor(obj[0])
    raise TypeError(f"Stored objects must hold tensors, got {type(obj).__name__}")


def num_examples(obj) -> int:
    """Size of the leading example dimension of a stored object."""
    return _first_tensor(obj).shape[0]


def _slice(obj, start: int, end: int):
    if isinstance(obj, torch.Tensor):
        return obj[start:end]
    if isinstance(obj, dict):
        return {key: _slice(value, start, end) for key, value in obj.items()}
    return tuple(_slice(value, start, end) for value in obj)


def _concat(parts: list):
    if len(parts) == 1:
        return parts[0]
    first = parts[0]
    if isinstance(first, torch.Tensor):
        return torch.cat(parts, dim=0)
    if isinstance(first, dict):
        return {key: _concat([part[key] for part in parts]) for key in first}
    return tuple(_concat([part[i] for part in parts]) for i in range(len(first)))


def rebatch(objects: Iterable, batch_size: int) -> Iterator:
    """
    Re-slice a stream of stored objects into minibatches of ``batch_size``.

    Args:
        objects: Tensors, tuples of tensors or dicts of tensors sharing a
            leading example dimension
        batch_size: Examples per minibatch (>= 1)

    Yields:
        Minibatches with the same structure as the input objects
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    pending, pending_size = [], 0
    for obj in objects:
        size = num_examples(obj)
        offset = 0
        while offset < size:
            take = min(batch_size - pending_size, size - offset)
            if offset == 0 and take == size:
                pending.append(obj)
            else:
                pending.append(_slice(obj, offset, offset + take))
            pending_size += take
            offset += take
            if pending_size == batch_size:
                yield _concat(pending)
                pending, pending_size = [], 0

    if pending:
        yield _concat(pending)


class _PrefetchFailure:
    def __init__(self, error: BaseException):
        self.error = error


class PrefetchIterator:
    """
    Iterate over ``source`` while a daemon thread keeps up to ``num_batches``
    items ready in a bounded queue. Call ``close()`` when abandoning the
    iterator early so the producer thread stops.
    """

    _END = object()
    _PUT_TIMEOUT = 0.05

    def __init__(self, source: Iterable, num_batches: int):
        if num_batches < 1:
            raise ValueError(f"num_batches must be >= 1, got {num_batches}")
        self._queue = queue.Queue(maxsize=num_batches)
        self._stop = threading.Event()
        self._finished = False
        self._thread = threading.Thread(target=self._fill, args=(iter(source),), daemon=True)
        self._thread.start()

    def _put(self, item) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=self._PUT_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False

    def _fill(self, source: Iterator):
        try:
            for item in source:
                if not self._put(item):
                    return
        except Exception as e:
            self._put(_PrefetchFailure(e))
            return
        self._put(self._END)

    def close(self):
        """Stop the producer, drop any queued items and wait for the thread."""
        self._stop.set()
        self._finished = True
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        self._thread.join()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def __iter__(self):
        return self

    def __next__(self):
        if self._finished:
            raise StopIteration
        item = self._queue.get()
        if item is self._END:
            self._finished = True
            raise StopIteration
        if isinstance(item, _PrefetchFailure):
            self._finished = True
            raise item.error
        return item


class WorkerNetwork:
    """A worker's private model, optimizer and running training state."""

    def __init__(self, module: torch.nn.Module, optimizer: torch.optim.Optimizer,
                 topology: ModelTopology, device: torch.device, stats: Optional[WorkerStats] = None):
        self.module = module
        self.optimizer = optimizer
        self.topology = topology
        self.device = device
        self.stats = stats
        self.score: Optional[float] = None
        self.num_batches = 0
        self.num_examples = 0

    def fit(self, batch) -> float:
        batch = move_to_device(batch, self.device)
        self.optimizer.zero_grad()
        loss = compute_loss(self.topology, self.module, batch)
        loss.backward()
        self.optimizer.step()

        self.score = loss.item()
        self.num_batches += 1
        self.num_examples += num_examples(batch)
        return self.score


class ParameterAveragingWorker:
    """
    Trains one shard per round starting from the broadcast snapshot.

    Args:
        broadcast: Handle to the round's ModelSnapshot
        save_optimizer_state: Start from the snapshot's optimizer state and
            return the worker's optimizer state for averaging
        config: Per-round worker settings
    """

    def __init__(self, broadcast: BroadcastHandle, save_optimizer_state: bool, config: WorkerConfiguration):
        self.broadcast = broadcast
        self.save_optimizer_state = save_optimizer_state
        self.config = config

    def get_initial_model(self) -> WorkerNetwork:
        start = time.perf_counter()
        snapshot: ModelSnapshot = self.broadcast.value
        module = snapshot.build_module()
        optimizer = snapshot.build_optimizer(module, load_state=self.save_optimizer_state)

        stats = None
        if self.config.collect_stats:
            stats = WorkerStats(init_durations=[time.perf_counter() - start])
        return WorkerNetwork(module, optimizer, snapshot.topology, snapshot.device, stats)

    def process_minibatch(self, batch, net: WorkerNetwork, is_last: bool) -> Optional[WorkerResult]:
        """
        Fit one minibatch. Returns the worker's result after the last one,
        None otherwise.
        """
        start = time.perf_counter()
        net.fit(batch)
        if net.stats is not None:
            net.stats.fit_durations.append(time.perf_counter() - start)

        if is_last:
            return self.get_final_result(net)
        return None

    def get_final_result(self, net: WorkerNetwork) -> WorkerResult:
        parameters = parameters_to_vector(net.module.parameters()).detach().cpu().clone()

        optimizer_aggregator = None
        if self.save_optimizer_state:
            optimizer_aggregator = TorchOptimizerStateAggregator.from_optimizer(net.optimizer)

        if net.stats is not None:
            net.stats.num_examples = net.num_examples

        logger.debug(
            "Worker fitted %d minibatches (%d examples), final loss %.6f",
            net.num_batches,
            net.num_examples,
            net.score,
        )
        return WorkerResult(
            parameter_sum=parameters,
            optimizer_aggregator=optimizer_aggregator,
            score_sum=net.score,
            aggregation_count=1,
            worker_stats=net.stats,
        )


class ExecuteWorkerFn:
    """
    Partition function run by the runtime: shard objects in, at most one
    WorkerResult out.
    """

    def __init__(self, worker: ParameterAveragingWorker):
        self.worker = worker

    def __call__(self, objects: Iterator) -> Iterator[WorkerResult]:
        config = self.worker.config
        batches = rebatch(objects, config.batch_size_per_worker)
        if config.is_graph:
            batches = map(as_graph_inputs, batches)
        prefetch = None
        if config.prefetch_batches > 0:
            batches = prefetch = PrefetchIterator(batches, config.prefetch_batches)

        try:
            batch = next(batches, None)
            if batch is None:
                # Empty shard: no contribution to this round
                return

            net = self.worker.get_initial_model()
            for batch, following in _with_lookahead(batch, batches):
                result = self.worker.process_minibatch(batch, net, is_last=following is None)
                if result is not None:
                    yield result
                    return
        finally:
            if prefetch is not None:
                prefetch.close()


def _with_lookahead(first, rest: Iterator):
    """Yield (item, next item or None) pairs."""
    current = first
    for following in itertools.chain(rest, [None]):
        yield current, following
        current = following
        if current is None:
            return
