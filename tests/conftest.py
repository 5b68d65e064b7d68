"""
Shared fixtures for the paramavg test suite.

The models are tiny linear regressions (4 parameters) so every test runs in
well under a second on CPU.

Run all tests:
    python -m pytest tests/ -v --tb=short
"""

import pytest
import torch
import torch.nn as nn
import torch.nn.functional as F

from paramavg import GraphModel, LocalRuntime, NetworkModel, OptimSpec


TRUE_WEIGHTS = torch.tensor([1.5, -2.0, 0.5])
TRUE_BIAS = 0.3


class LinearRegression(nn.Module):
    """Model-returns-loss wrapper taking a (features, targets) batch."""

    def __init__(self, in_features=3):
        super().__init__()
        self.linear = nn.Linear(in_features, 1)

    def forward(self, batch):
        x, y = batch
        return F.mse_loss(self.linear(x).squeeze(-1), y)


class GraphLinearRegression(nn.Module):
    """Same regression, taking named inputs."""

    def __init__(self, in_features=3):
        super().__init__()
        self.linear = nn.Linear(in_features, 1)

    def forward(self, features, labels):
        return F.mse_loss(self.linear(features).squeeze(-1), labels)


def synthetic_objects(num_objects, examples_per_object=1, seed=0):
    """
    Stored objects for y = x . TRUE_WEIGHTS + TRUE_BIAS, each a
    (features, targets) tuple with a leading example dimension.
    """
    generator = torch.Generator().manual_seed(seed)
    num_examples = num_objects * examples_per_object
    x = torch.randn(num_examples, 3, generator=generator)
    y = x @ TRUE_WEIGHTS + TRUE_BIAS
    return [
        (x[i:i + examples_per_object], y[i:i + examples_per_object])
        for i in range(0, num_examples, examples_per_object)
    ]


@pytest.fixture
def runtime():
    return LocalRuntime(max_workers=4)


@pytest.fixture
def make_objects():
    return synthetic_objects


@pytest.fixture
def make_network_model():
    def factory(optim="sgd", seed=0, **optim_kwargs):
        torch.manual_seed(seed)
        optim_kwargs.setdefault("lr", 0.05)
        return NetworkModel(
            LinearRegression(), optim_spec=OptimSpec.from_string(optim, **optim_kwargs), device="cpu"
        )

    return factory


@pytest.fixture
def make_graph_model():
    def factory(optim="sgd", seed=0, **optim_kwargs):
        torch.manual_seed(seed)
        optim_kwargs.setdefault("lr", 0.05)
        return GraphModel(
            GraphLinearRegression(),
            optim_spec=OptimSpec.from_string(optim, **optim_kwargs),
            device="cpu",
        )

    return factory
