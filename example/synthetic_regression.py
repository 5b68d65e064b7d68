"""
Synthetic Regression with a Graph Model

Fits y = x . w + b on generated data using a multi-input (graph topology)
model, with pre-batched stored objects and optimizer state averaging. Runs in
seconds on CPU and needs no downloads, so it doubles as a smoke test of the
whole round loop.
"""

import logging

import torch
import torch.nn as nn
import torch.nn.functional as F

from paramavg import (
    GraphModel,
    LocalRuntime,
    OptimSpec,
    ParameterAveragingTrainingMaster,
    ProgressListener,
    TrainingConfiguration,
)


NUM_FEATURES = 8
EXAMPLES_PER_OBJECT = 32
NUM_OBJECTS = 400
NUM_WORKERS = 4


class Regression(nn.Module):
    def __init__(self):
        super().__init__()
        self.linear = nn.Linear(NUM_FEATURES, 1)

    def forward(self, features, labels):
        return F.mse_loss(self.linear(features).squeeze(-1), labels)


def make_objects(seed=0):
    generator = torch.Generator().manual_seed(seed)
    true_weights = torch.randn(NUM_FEATURES, generator=generator)
    objects = []
    for _ in range(NUM_OBJECTS):
        features = torch.randn(EXAMPLES_PER_OBJECT, NUM_FEATURES, generator=generator)
        labels = features @ true_weights + 0.1 * torch.randn(EXAMPLES_PER_OBJECT, generator=generator)
        objects.append({"features": features, "labels": labels})
    return objects


def main():
    logging.basicConfig(level=logging.INFO)
    torch.manual_seed(0)

    config = (
        TrainingConfiguration.builder(NUM_WORKERS, records_per_stored_object=EXAMPLES_PER_OBJECT)
        .batch_size_per_worker(16)
        .averaging_frequency(4)
        .repartition_policy("when_partition_count_differs")
        .collect_stats(True)
        .build()
    )

    runtime = LocalRuntime(max_workers=NUM_WORKERS)
    dataset = runtime.parallelize(make_objects(), num_partitions=NUM_WORKERS)
    model = GraphModel(Regression(), optim_spec=OptimSpec(torch.optim.Adam, lr=0.05), device="cpu")

    progress = ProgressListener(desc="synthetic")
    master = ParameterAveragingTrainingMaster(config, runtime=runtime, listeners=[progress], seed=0)
    for epoch in range(3):
        master.execute_training(model, dataset)
        print(f"epoch {epoch}: iteration {model.iteration_count}, score {model.score:.4f}")
    progress.close()

    print(master.get_training_stats().as_string())


if __name__ == "__main__":
    main()
