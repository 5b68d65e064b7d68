"""
paramavg Errors - Failure Taxonomy for Parameter Averaging Training

Every error raised by the training master is unrecoverable for the current
training pass. Nothing in paramavg retries a failed round or a failed worker;
a caller that wants retries re-invokes the whole pass.

## Hierarchy

```
ParameterAveragingError (RuntimeError)
├── InvalidConfigurationError (also ValueError)   construction time only
├── DimensionMismatchError                         aggregation / apply time
├── EmptyAggregationError                          apply time
└── UnknownRepartitionPolicyError (also ValueError) first use of a policy
```

The configuration errors also subclass ValueError so callers validating user
input with ``except ValueError`` keep working.
"""


class ParameterAveragingError(RuntimeError):
    """Base class for all paramavg training failures."""


class InvalidConfigurationError(ParameterAveragingError, ValueError):
    """
    Raised when a TrainingConfiguration is built with an out-of-range value.

    Covers non-positive num_workers, records_per_stored_object,
    averaging_frequency and batch_size_per_worker, and negative
    prefetch_batches. Never raised while a round is running.
    """


class DimensionMismatchError(ParameterAveragingError):
    """
    Raised when parameter vectors of differing length meet during aggregation.

    This signals that workers trained against incompatible model snapshots.
    Partial-vector averaging is never attempted.
    """

    def __init__(self, expected, actual, what: str = "parameter vector"):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"Cannot merge {what} of shape {self.actual} into one of shape "
            f"{self.expected}"
        )


class EmptyAggregationError(ParameterAveragingError):
    """Raised when a round produced zero WorkerResults (nothing to average)."""


class UnknownRepartitionPolicyError(ParameterAveragingError, ValueError):
    """Raised when a repartition policy value is not recognized."""
