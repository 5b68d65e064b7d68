"""
paramavg Optim - Optimizer Specification and Mergeable Optimizer State

Workers never receive a live optimizer. They receive an OptimSpec (which
optimizer class and which hyperparameters) plus, when optimizer state is
saved, an averaged ``state_dict()`` to load into the optimizer they build.
After training each worker wraps its optimizer state in an aggregator that
the accumulator can merge with other workers' aggregators.

## OptimSpec

Factory for torch optimizers. It stores the class and keyword arguments and
builds the optimizer only once a worker has its private module. An OptimSpec
pickles cleanly and carries no optimizer state of its own.

```python
spec = OptimSpec(torch.optim.SGD, lr=0.05, momentum=0.9)
spec = OptimSpec.from_string("adamw", lr=3e-4)
optimizer = spec.build(module)
```

## Mergeable optimizer state

The training master depends only on the OptimizerStateAggregator capability:

- ``merge(other)`` returns a new aggregator representing both inputs
- ``get_state()`` returns the averaged state, ready for load_state_dict()

TorchOptimizerStateAggregator keeps per-parameter running sums and per-parameter
counts, so parameters that only some workers touched (no gradient elsewhere)
are still averaged over the workers that actually hold state for them.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

import torch

from .errors import DimensionMismatchError


@dataclass
class OptimSpec:
    """
    Optimizer class plus constructor arguments, built lazily per worker.

    Attributes:
        cls: torch optimizer class
        kwargs: Constructor arguments (lr, momentum, weight_decay, ...)
    """

    cls: Type[torch.optim.Optimizer] = torch.optim.SGD
    kwargs: Dict[str, Any] = None

    def __init__(self, cls: Type[torch.optim.Optimizer] = torch.optim.SGD, **kwargs):
        self.cls = cls
        self.kwargs = kwargs

    @classmethod
    def from_string(cls, name: str, **kwargs) -> "OptimSpec":
        """
        Create an OptimSpec from a case-insensitive optimizer name.

        Raises:
            ValueError: If the name is not one of the supported optimizers
        """
        optimizer_map = {
            "adam": torch.optim.Adam,
            "adamw": torch.optim.AdamW,
            "sgd": torch.optim.SGD,
            "rmsprop": torch.optim.RMSprop,
            "adagrad": torch.optim.Adagrad,
        }

        name_lower = name.lower()
        if name_lower not in optimizer_map:
            available = ", ".join(optimizer_map.keys())
            raise ValueError(f"Unknown optimizer '{name}'. Available options: {available}")

        return cls(optimizer_map[name_lower], **kwargs)

    def build(self, module: torch.nn.Module, state: Optional[dict] = None) -> torch.optim.Optimizer:
        """
        Construct an optimizer over ``module``'s parameters.

        Args:
            module: Module whose parameters the optimizer updates
            state: Optional optimizer state_dict to restore (copied first)

        Returns:
            torch.optim.Optimizer
        """
        optimizer = self.cls(module.parameters(), **(self.kwargs or {}))
        if state is not None:
            optimizer.load_state_dict(copy.deepcopy(state))
        return optimizer


def ensure_optim_spec(optim, **kwargs) -> OptimSpec:
    """
    Accept None, an optimizer name or an OptimSpec and return an OptimSpec.

    None becomes plain SGD. Extra kwargs override the spec's own arguments.
    """
    if optim is None:
        return OptimSpec(torch.optim.SGD, **kwargs)
    if isinstance(optim, str):
        return OptimSpec.from_string(optim, **kwargs)
    if isinstance(optim, OptimSpec):
        if kwargs:
            return OptimSpec(optim.cls, **{**(optim.kwargs or {}), **kwargs})
        return optim
    raise TypeError(f"Expected str, OptimSpec, or None, got {type(optim)}")


class OptimizerStateAggregator(ABC):
    """Opaque, mergeable optimizer state produced by one or more workers."""

    @abstractmethod
    def merge(self, other: "OptimizerStateAggregator") -> "OptimizerStateAggregator":
        raise NotImplementedError

    @abstractmethod
    def get_state(self) -> Any:
        raise NotImplementedError


def _detached(value):
    if isinstance(value, torch.Tensor):
        return value.detach().cpu().clone()
    return value


def _add(a, b, name: str):
    if a is None or b is None:
        return a if b is None else b
    if isinstance(a, torch.Tensor):
        if a.shape != b.shape:
            raise DimensionMismatchError(a.shape, b.shape, f"optimizer state '{name}'")
        return a + b
    return a + b


def _divide(value, count: int):
    if isinstance(value, torch.Tensor):
        if value.is_floating_point():
            return value / count
        return torch.round(value.double() / count).to(value.dtype)
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return int(round(value / count))
    if isinstance(value, float):
        return value / count
    return value


class TorchOptimizerStateAggregator(OptimizerStateAggregator):
    """
    Sum of torch optimizer ``state_dict()`` entries from several workers.

    Args:
        state_sums: param index -> {state key -> summed value}
        counts: param index -> number of workers that contributed to it
        param_groups: param_groups of the first contributing optimizer
    """

    def __init__(self, state_sums: Dict[int, Dict[str, Any]], counts: Dict[int, int], param_groups):
        self.state_sums = state_sums
        self.counts = counts
        self.param_groups = param_groups

    @classmethod
    def from_optimizer(cls, optimizer: torch.optim.Optimizer) -> "TorchOptimizerStateAggregator":
        return cls.from_state_dict(optimizer.state_dict())

    @classmethod
    def from_state_dict(cls, state_dict: dict) -> "TorchOptimizerStateAggregator":
        state_sums = {
            index: {key: _detached(value) for key, value in entries.items()}
            for index, entries in state_dict["state"].items()
        }
        counts = {index: 1 for index in state_sums}
        return cls(state_sums, counts, copy.deepcopy(state_dict["param_groups"]))

    def merge(self, other: "TorchOptimizerStateAggregator") -> "TorchOptimizerStateAggregator":
        if not isinstance(other, TorchOptimizerStateAggregator):
            raise TypeError(
                f"Cannot merge {type(other).__name__} into TorchOptimizerStateAggregator"
            )

        state_sums = {}
        counts = {}
        for index in set(self.state_sums) | set(other.state_sums):
            if index not in other.state_sums:
                state_sums[index] = self.state_sums[index]
                counts[index] = self.counts[index]
            elif index not in self.state_sums:
                state_sums[index] = other.state_sums[index]
                counts[index] = other.counts[index]
            else:
                mine, theirs = self.state_sums[index], other.state_sums[index]
                state_sums[index] = {
                    key: _add(mine.get(key), theirs.get(key), f"{index}.{key}")
                    for key in set(mine) | set(theirs)
                }
                counts[index] = self.counts[index] + other.counts[index]

        return TorchOptimizerStateAggregator(state_sums, counts, self.param_groups)

    def get_state(self) -> dict:
        """Averaged state_dict, loadable with optimizer.load_state_dict()."""
        state = {
            index: {key: _divide(value, self.counts[index]) for key, value in entries.items()}
            for index, entries in sorted(self.state_sums.items())
        }
        return {"state": state, "param_groups": copy.deepcopy(self.param_groups)}
