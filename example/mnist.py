"""
MNIST Parameter Averaging Training

Trains a small CNN on MNIST with synchronous parameter averaging across four
local workers, then reports validation loss of the averaged model.

Role in System:
- End-to-end demonstration of ParameterAveragingTrainingMaster on real data
- Shows the model-returns-loss wrapper convention workers rely on
- Compares averaging frequencies on a well-understood vision task

Calls:
- paramavg.LocalRuntime.from_torch_dataset to build the partitioned dataset
- paramavg.ParameterAveragingTrainingMaster for round orchestration
- paramavg.ProgressListener / CSVListener for progress and run logs
- torchvision for MNIST loading and preprocessing
"""

import logging

import torch
import torch.nn as nn
import torch.nn.functional as F
from torchvision import datasets, transforms

from paramavg import (
    CSVListener,
    LocalRuntime,
    NetworkModel,
    OptimSpec,
    ParameterAveragingTrainingMaster,
    ProgressListener,
    TrainingConfiguration,
)
from paramavg.planner import num_rounds, objects_per_round


class MNISTExperimentConfig:
    """
    MNIST parameter averaging experiment constants.
    """

    MNIST_NORMALIZATION_MEAN = 0.1307
    MNIST_NORMALIZATION_STD = 0.3081

    NUM_WORKERS = 4
    """Number of local workers, one partition each."""

    BATCH_SIZE_PER_WORKER = 64

    AVERAGING_FREQUENCIES = (1, 5, 20)
    """
    Minibatches per worker between averagings. 1 averages after every step;
    20 lets worker models drift for a while before they are pulled together.
    """

    LEARNING_RATE = 0.05
    MOMENTUM = 0.9

    VALIDATION_BATCH_SIZE = 1000


# ── 1. Dataset ───────────────────────────────────────────────────────────────
def get_mnist(root="data", train=True):
    transform = transforms.Compose([
        transforms.ToTensor(),
        transforms.Normalize(
            (MNISTExperimentConfig.MNIST_NORMALIZATION_MEAN,),
            (MNISTExperimentConfig.MNIST_NORMALIZATION_STD,),
        ),
    ])
    return datasets.MNIST(root, train=train, download=True, transform=transform)


# ── 2. Model ─────────────────────────────────────────────────────────────────
class CNN(nn.Module):
    def __init__(self):
        super().__init__()
        self.features = nn.Sequential(
            nn.Conv2d(1, 32, 3, padding=1), nn.ReLU(), nn.MaxPool2d(2),
            nn.Conv2d(32, 64, 3, padding=1), nn.ReLU(), nn.MaxPool2d(2),
        )
        self.classifier = nn.Sequential(
            nn.Flatten(), nn.Linear(64 * 7 * 7, 128), nn.ReLU(), nn.Linear(128, 10)
        )

    def forward(self, x):
        return self.classifier(self.features(x))


class ModelWrapper(nn.Module):
    """Workers call ``module(batch)`` and expect a scalar loss back."""

    def __init__(self, backbone):
        super().__init__()
        self.backbone = backbone

    def forward(self, batch):
        imgs, labels = batch
        logits = self.backbone(imgs)
        return F.cross_entropy(logits, labels)


# ── 3. Training sweep ────────────────────────────────────────────────────────
def run_sweep():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")

    runtime = LocalRuntime(max_workers=MNISTExperimentConfig.NUM_WORKERS)
    train_data = runtime.from_torch_dataset(
        get_mnist(train=True), num_partitions=MNISTExperimentConfig.NUM_WORKERS
    )
    val_ds = get_mnist(train=False)
    val_batches = list(
        torch.utils.data.DataLoader(val_ds, batch_size=MNISTExperimentConfig.VALIDATION_BATCH_SIZE)
    )

    optim_spec = OptimSpec(
        torch.optim.SGD,
        lr=MNISTExperimentConfig.LEARNING_RATE,
        momentum=MNISTExperimentConfig.MOMENTUM,
    )

    for frequency in MNISTExperimentConfig.AVERAGING_FREQUENCIES:
        torch.manual_seed(0)
        config = (
            TrainingConfiguration.builder(
                num_workers=MNISTExperimentConfig.NUM_WORKERS, records_per_stored_object=1
            )
            .batch_size_per_worker(MNISTExperimentConfig.BATCH_SIZE_PER_WORKER)
            .averaging_frequency(frequency)
            .repartition_policy("when_partition_count_differs")
            .collect_stats(True)
            .build()
        )
        total_rounds = num_rounds(train_data.count(), objects_per_round(config))

        model = NetworkModel(ModelWrapper(CNN()), optim_spec=optim_spec, device="cpu")
        master = ParameterAveragingTrainingMaster(
            config,
            runtime=runtime,
            listeners=[
                ProgressListener(total_rounds=total_rounds, desc=f"H={frequency}"),
                CSVListener(run_name=f"mnist_avg_every_{frequency}"),
            ],
            seed=0,
        )

        print(f"\n=== AVERAGING EVERY {frequency} MINIBATCHES ===")
        master.execute_training(model, train_data)
        for listener in master.listeners:
            listener.close()

        print(f"validation loss: {model.evaluate(val_batches):.4f}")
        print(master.get_training_stats().as_string())


if __name__ == "__main__":
    run_sweep()
