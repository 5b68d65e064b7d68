"""
paramavg Repartition - Per-Round Data Redistribution Policy

Before each round the master may physically redistribute the round's data
across exactly ``num_workers`` partitions. Uneven partition counts (left over
from upstream filtering or from the random round split) give workers uneven
load, and the whole round then waits on the slowest worker. Repartitioning
fixes that at the cost of a shuffle, so the default is NEVER.

## Policies

| Policy                        | Repartition when                          |
|-------------------------------|-------------------------------------------|
| NEVER                         | never                                     |
| ALWAYS                        | every round, even if counts already match |
| WHEN_PARTITION_COUNT_DIFFERS  | current_partition_count != num_workers    |
"""

import logging
from enum import Enum

from .errors import UnknownRepartitionPolicyError

logger = logging.getLogger(__name__)


class RepartitionPolicy(Enum):
    NEVER = "never"
    ALWAYS = "always"
    WHEN_PARTITION_COUNT_DIFFERS = "when_partition_count_differs"

    @classmethod
    def parse(cls, value) -> "RepartitionPolicy":
        """
        Convert a policy member, name or value (case-insensitive) to a member.

        Raises:
            UnknownRepartitionPolicyError: If value does not name a policy
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for policy in cls:
                if key in (policy.value, policy.name.lower()):
                    return policy
        available = ", ".join(policy.value for policy in cls)
        raise UnknownRepartitionPolicyError(
            f"Unknown repartition policy {value!r}. Available options: {available}"
        )


def should_repartition(policy, current_partition_count: int, num_workers: int) -> bool:
    """
    Decide whether a round's data must be redistributed before dispatch.

    Args:
        policy: RepartitionPolicy member
        current_partition_count: Number of partitions the round currently has
        num_workers: Configured number of workers

    Returns:
        bool: True when the data should be repartitioned into num_workers shards

    Raises:
        UnknownRepartitionPolicyError: If policy is not a RepartitionPolicy
    """
    if policy is RepartitionPolicy.NEVER:
        return False
    if policy is RepartitionPolicy.ALWAYS:
        return True
    if policy is RepartitionPolicy.WHEN_PARTITION_COUNT_DIFFERS:
        return current_partition_count != num_workers
    raise UnknownRepartitionPolicyError(f"Unknown setting for repartition: {policy!r}")


def repartition_if_required(dataset, policy, num_workers: int, observer=None):
    """
    Return ``dataset`` redistributed into ``num_workers`` partitions if the
    policy asks for it, otherwise the dataset unchanged.

    The observer (see stats.TrainingObserver) brackets the shuffle with
    repartition start/end events.
    """
    current = dataset.num_partitions
    if not should_repartition(policy, current, num_workers):
        return dataset

    logger.debug(
        "Repartitioning round data from %d to %d partitions (policy=%s)",
        current,
        num_workers,
        policy.value,
    )
    if observer is not None:
        observer.on_repartition_start()
    repartitioned = dataset.repartition(num_workers)
    if observer is not None:
        observer.on_repartition_end()
    return repartitioned
