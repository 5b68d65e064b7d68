"""
paramavg Model - The Global Model and its Round Snapshots

The training master owns exactly one TrainableModel between rounds. It is read
once per round to produce an immutable ModelSnapshot that is broadcast to the
workers, and written once per round by apply_average() with the aggregated
result. Workers never see the live model.

## TrainableModel

Wraps a ``torch.nn.Module`` whose forward pass takes a batch and returns a
scalar loss (``loss = model(minibatch)``), plus the OptimSpec workers should
build and the global training state:

- ``current_parameters()`` / ``set_parameters(vector)``: flat parameter vector
- ``current_optimizer_state()`` / ``set_optimizer_state(state)``
- ``score``: last averaged loss, ``iteration_count``: rounds applied so far

## Topologies

One orchestration path serves two model shapes, distinguished by the
ModelTopology tag carried in every snapshot:

| Topology | Wrapper      | Forward call          | Batch                      |
|----------|--------------|-----------------------|----------------------------|
| NETWORK  | NetworkModel | ``module(batch)``     | tuple of tensors           |
| GRAPH    | GraphModel   | ``module(**inputs)``  | dict of named tensors      |

A GraphModel also accepts plain ``(features, labels)`` tuples, which are
presented to the module as ``features=`` and ``labels=``.
"""

import copy
from abc import ABC
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import torch
from torch.nn.utils import parameters_to_vector, vector_to_parameters

from .errors import DimensionMismatchError
from .optim import OptimSpec, ensure_optim_spec
from .utils import LogModule


class ModelTopology(Enum):
    NETWORK = "network"
    GRAPH = "graph"


def resolve_device(device=None) -> torch.device:
    """
    Pick a torch device, auto-detecting CUDA, then MPS, then CPU when
    ``device`` is None or empty.
    """
    if device == "" or device is None:
        if torch.cuda.is_available():
            device = "cuda"
        elif torch.backends.mps.is_available():
            device = "mps"
        else:
            device = "cpu"
    return torch.device(device)


def move_to_device(batch, device):
    """Move a tensor, a tuple/list of tensors or a dict of tensors to device."""
    if isinstance(batch, dict):
        return {key: move_to_device(value, device) for key, value in batch.items()}
    if isinstance(batch, (tuple, list)):
        return tuple(move_to_device(x, device) for x in batch)
    if isinstance(batch, torch.Tensor):
        return batch.to(device)
    return batch


def as_graph_inputs(batch) -> dict:
    if isinstance(batch, dict):
        return batch
    if isinstance(batch, (tuple, list)) and len(batch) == 2:
        return {"features": batch[0], "labels": batch[1]}
    raise TypeError(
        f"Graph models take dict batches or (features, labels) tuples, got {type(batch).__name__}"
    )


def compute_loss(topology: ModelTopology, module: torch.nn.Module, batch) -> torch.Tensor:
    """Run ``module`` on ``batch`` according to the topology and return the loss."""
    if topology is ModelTopology.NETWORK:
        return module(batch)
    if topology is ModelTopology.GRAPH:
        return module(**as_graph_inputs(batch))
    raise ValueError(f"Unknown model topology: {topology!r}")


@dataclass(frozen=True)
class ModelSnapshot:
    """
    Immutable point-in-time copy of the global model, broadcast once per round.

    Attributes:
        parameters: Flat CPU parameter vector
        optimizer_state: Optimizer state_dict, or None for a fresh optimizer
        topology: NETWORK or GRAPH
        template: CPU copy of the module, describing the architecture
        optim_spec: Optimizer each worker builds
        device: Device workers train on
    """

    parameters: torch.Tensor
    optimizer_state: Optional[dict]
    topology: ModelTopology
    template: torch.nn.Module
    optim_spec: OptimSpec
    device: torch.device = torch.device("cpu")

    def build_module(self) -> torch.nn.Module:
        """Private trainable copy of the snapshot for one worker."""
        module = copy.deepcopy(self.template)
        with torch.no_grad():
            vector_to_parameters(self.parameters.clone(), module.parameters())
        module.to(self.device)
        module.train()
        return module

    def build_optimizer(self, module: torch.nn.Module, load_state: bool = True) -> torch.optim.Optimizer:
        state = self.optimizer_state if load_state else None
        return self.optim_spec.build(module, state)


class TrainableModel(LogModule, ABC):
    """
    The single authoritative model the training master trains.

    Args:
        module: torch module whose forward returns a scalar loss
        optim_spec: Optimizer workers build (OptimSpec, name, or None for SGD)
        device: Training device; None auto-detects
    """

    topology: ModelTopology = None

    def __init__(self, module: torch.nn.Module, optim_spec=None, device="cpu"):
        self.device = resolve_device(device)
        self.module = module.to(self.device)
        self.optim_spec = ensure_optim_spec(optim_spec)

        self.optimizer_state: Optional[dict] = None
        self.score: Optional[float] = None
        self.iteration_count = 0

    def num_params(self) -> int:
        return sum(p.numel() for p in self.module.parameters())

    def current_parameters(self) -> torch.Tensor:
        return parameters_to_vector(self.module.parameters()).detach().cpu().clone()

    def set_parameters(self, vector: torch.Tensor) -> None:
        """
        Overwrite every parameter from a flat vector.

        Raises:
            DimensionMismatchError: If the vector length is not num_params()
        """
        expected = self.num_params()
        if vector.dim() != 1 or vector.numel() != expected:
            raise DimensionMismatchError((expected,), tuple(vector.shape))
        with torch.no_grad():
            vector_to_parameters(vector.to(self.device), self.module.parameters())

    def current_optimizer_state(self) -> Optional[dict]:
        return self.optimizer_state

    def set_optimizer_state(self, state: Optional[dict]) -> None:
        # None means workers start the next round with a fresh optimizer
        self.optimizer_state = state

    def set_score(self, score: float) -> None:
        self.score = score

    def snapshot(self) -> ModelSnapshot:
        template = copy.deepcopy(self.module).cpu()
        return ModelSnapshot(
            parameters=parameters_to_vector(template.parameters()).detach().clone(),
            optimizer_state=copy.deepcopy(self.optimizer_state),
            topology=self.topology,
            template=template,
            optim_spec=self.optim_spec,
            device=self.device,
        )

    def apply_average(self, parameters: torch.Tensor, optimizer_state: Optional[dict], score: float) -> None:
        """
        Commit one round's averaged result and advance the iteration count.

        Parameters are validated before anything is written, so a mismatched
        vector leaves the model exactly as it was.
        """
        self.set_parameters(parameters)
        self.set_optimizer_state(optimizer_state)
        self.set_score(score)
        self.iteration_count += 1

    def compute_loss(self, batch) -> torch.Tensor:
        return compute_loss(self.topology, self.module, move_to_device(batch, self.device))

    def evaluate(self, batches: Iterable) -> float:
        """Mean loss of the current global model over ``batches``."""
        was_training = self.module.training
        self.module.eval()
        losses = []
        with torch.no_grad():
            for batch in batches:
                losses.append(self.compute_loss(batch).item())
        self.module.train(was_training)
        if not losses:
            raise ValueError("evaluate() needs at least one batch")
        return sum(losses) / len(losses)

    def __config__(self, remove_keys=None):
        config = super().__config__(["optimizer_state", *(remove_keys or [])])
        config["model"] = type(self).__name__
        return config


class NetworkModel(TrainableModel):
    """Sequential-style model: ``module(batch)`` with a tuple batch."""

    topology = ModelTopology.NETWORK


class GraphModel(TrainableModel):
    """Multi-input model: ``module(**inputs)`` with named tensor inputs."""

    topology = ModelTopology.GRAPH
