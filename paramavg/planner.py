"""
paramavg Planner - Round Sizing and Round Splitting

One round is one averaging period: every worker fits ``averaging_frequency``
minibatches of ``batch_size_per_worker`` examples, then all parameters are
averaged. This module works out how many stored dataset objects feed one
round, and cuts the full dataset into that many rounds.

## Round Size

```
records_per_stored_object == 1:
    objects_per_round = num_workers * batch_size_per_worker * averaging_frequency

records_per_stored_object > 1:
    per_worker = (batch_size_per_worker * averaging_frequency) // batch_size_per_worker
    objects_per_round = max(per_worker, 1) * num_workers
```

With single-example objects the round size tracks the work each worker does
over the whole averaging window. With pre-batched objects the binding
constraint is "at least one object per worker", which trades precision for
simplicity in the common pre-batched case. Example: 100 examples per object,
batch size 50, averaging frequency 1 and 3 workers gives 3 objects per round.

## Round Split

If the dataset is no bigger than one round it is used whole. Otherwise
``total // objects_per_round`` rounds are drawn with uniform weights by a
randomized split: remainder objects are spread over the rounds instead of
being dropped or forming an undersized extra round, and round composition is
not correlated with storage order.
"""

from typing import List, Optional

from .config import TrainingConfiguration


def objects_per_round(config: TrainingConfiguration) -> int:
    """
    Number of stored dataset objects that make up one training round.

    Args:
        config: Validated training configuration

    Returns:
        int: Objects per round (>= 1 for any valid configuration)
    """
    if config.records_per_stored_object == 1:
        return config.num_workers * config.batch_size_per_worker * config.averaging_frequency

    required_examples_per_worker = config.batch_size_per_worker * config.averaging_frequency
    objects_needed_per_worker = required_examples_per_worker // config.batch_size_per_worker
    if objects_needed_per_worker < 1:
        # One stored object already holds more examples than a worker needs
        objects_needed_per_worker = 1

    return objects_needed_per_worker * config.num_workers


def num_rounds(total_object_count: int, objects_in_round: int) -> int:
    if total_object_count <= objects_in_round:
        return 1
    return total_object_count // objects_in_round  # intentional round down


def split_into_rounds(
    dataset,
    total_object_count: int,
    objects_in_round: int,
    seed: Optional[int] = None,
) -> List:
    """
    Partition ``dataset`` into an ordered list of disjoint rounds.

    Args:
        dataset: DistributedDataset holding every training object
        total_object_count: dataset.count(), passed in so it is computed once
        objects_in_round: Result of objects_per_round()
        seed: Optional seed for the randomized split

    Returns:
        list: Round datasets, in training order
    """
    if total_object_count <= objects_in_round:
        return [dataset]

    rounds = num_rounds(total_object_count, objects_in_round)
    weights = [1.0 / rounds] * rounds
    return list(dataset.random_split(weights, seed=seed))
