"""
paramavg Listeners - Round Progress and Experiment Tracking

After every applied round the training master calls each registered
RoundListener synchronously with the global model and the new iteration
count. The model's ``score`` then holds the round's averaged loss.

## Implementations

### ProgressListener
tqdm progress bar advancing one step per round, with the score as postfix.

### CSVListener
Local files for offline analysis:

```
logs/
└── run_name/
    ├── config.json          # run configuration (utils.create_config)
    └── rounds.csv           # iteration, score, timestamp
```

### WandbListener
Streams ``score`` per iteration to Weights & Biases. ``wandb`` is an optional
dependency, imported when the listener is created.

## Usage

```python
master = ParameterAveragingTrainingMaster(
    config,
    listeners=[ProgressListener(total_rounds=10), CSVListener(run_name="demo")],
)
```

Listeners that need the run configuration call ``attach(master, model)``
before training; ``create_config`` then records the master's configuration
alongside the model summary.
"""

import csv
import json
import os
from datetime import datetime
from typing import Optional

from tqdm import tqdm

from .utils import LogModule, create_config


class RoundListener(LogModule):
    """Callback interface invoked after each round has been applied."""

    def on_round_complete(self, model, iteration_count: int) -> None:
        pass

    def attach(self, training_master, model) -> None:
        """Called once before training with the master and the global model."""
        pass

    def close(self) -> None:
        pass


class ProgressListener(RoundListener):
    """
    tqdm progress bar over training rounds.

    Args:
        total_rounds: Expected number of rounds (None for an open-ended bar)
        desc: Bar description
    """

    def __init__(self, total_rounds: Optional[int] = None, desc: str = "rounds"):
        self.total_rounds = total_rounds
        self.desc = desc
        self.pbar = None

    def on_round_complete(self, model, iteration_count: int) -> None:
        if self.pbar is None:
            self.pbar = tqdm(total=self.total_rounds, desc=self.desc)
        self.pbar.update(1)
        if model.score is not None:
            self.pbar.set_postfix({"score": f"{model.score:.4f}"})

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None


class CSVListener(RoundListener):
    """
    Append one row per round to ``<log_dir>/<run_name>/rounds.csv``.

    Args:
        log_dir: Base directory for run folders
        run_name: Run folder name (timestamp when None)
    """

    FIELDS = ["iteration", "score", "timestamp"]

    def __init__(self, log_dir: str = "logs", run_name: Optional[str] = None):
        if run_name is None:
            run_name = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_name = run_name
        self.log_dir = log_dir

        self.run_dir = os.path.join(log_dir, run_name)
        os.makedirs(self.run_dir, exist_ok=True)

        self.rounds_csv_path = os.path.join(self.run_dir, "rounds.csv")
        self.config_path = os.path.join(self.run_dir, "config.json")

        # Keep rows from an earlier run under the same name
        if not os.path.exists(self.rounds_csv_path):
            with open(self.rounds_csv_path, "w", newline="") as f:
                csv.writer(f).writerow(self.FIELDS)

    def attach(self, training_master, model) -> None:
        config = create_config(
            model=model,
            training_master=training_master,
            extra_config={"run_name": self.run_name, "log_dir": self.log_dir},
        )
        with open(self.config_path, "w") as f:
            json.dump(config, f, indent=2)

    def on_round_complete(self, model, iteration_count: int) -> None:
        with open(self.rounds_csv_path, "a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=self.FIELDS)
            writer.writerow(
                {
                    "iteration": iteration_count,
                    "score": model.score,
                    "timestamp": datetime.now().isoformat(),
                }
            )


class WandbListener(RoundListener):
    """
    Log the averaged score of every round to Weights & Biases.

    Args:
        wandb_project: Project name
        run_name: Run name (None lets wandb choose)
    """

    def __init__(self, wandb_project: Optional[str] = None, run_name: Optional[str] = None):
        try:
            import wandb
        except ImportError:
            raise ImportError(
                "wandb is not installed. Install it with `pip install paramavg[wandb]` "
                "or use CSVListener instead."
            )

        self._wandb = wandb
        self.wandb_project = wandb_project
        self.run_name = run_name
        self.run = None

    def attach(self, training_master, model) -> None:
        config = create_config(
            model=model,
            training_master=training_master,
            extra_config={"run_name": self.run_name},
        )
        self.run = self._wandb.init(
            project=self.wandb_project,
            name=self.run_name,
            config=config,
            resume="allow",
        )

    def on_round_complete(self, model, iteration_count: int) -> None:
        if self.run is None:
            self.attach(None, model)
        self._wandb.log({"score": model.score}, step=iteration_count)

    def close(self) -> None:
        if self.run is not None:
            self.run.finish()
            self.run = None
