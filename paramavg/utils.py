"""
paramavg Utils - Run Configuration Extraction

Listeners that persist runs (CSVListener, WandbListener) need a flat,
JSON-safe description of what was trained and how. Training objects carry
tensors, modules, optimizers and callables that must not be serialized
verbatim, so this module walks objects recursively and replaces those with
short descriptive strings.

## Key Pieces

- **LogModule**: mixin giving any object a ``__config__()`` method
- **extract_config()**: depth- and size-limited recursive extraction
- **create_config()**: the run config for a model + training master pair

## Safe Representations

| Object                 | Representation            |
|------------------------|---------------------------|
| torch.Tensor           | ``"<Tensor [10, 4]>"``     |
| torch.nn.Module        | ``"<Module Linear>"``      |
| torch.optim.Optimizer  | ``"<Optimizer SGD>"``      |
| torch.device           | ``"cuda:0"``               |
| Enum member            | its value                  |
| callable               | ``"<function name>"``      |
"""

from enum import Enum
from typing import Any, Dict, List

import torch


class UtilsConstants:
    MAX_RECURSION_DEPTH = 10
    """
    Deepest nesting extract_config() follows before falling back to the type
    name. Enough for master → configuration → policy chains while stopping
    circular references.
    """

    MAX_LIST_ITEMS = 10
    """
    Sequences are truncated to their first items; listener lists and the like
    rarely need more to be recognizable.
    """

    MAX_DICT_KEYS = 50


class LogModule:
    """
    Mixin that adds automatic configuration extraction to a class.

    ```python
    class MyListener(LogModule):
        def __init__(self, run_name="demo"):
            self.run_name = run_name

    MyListener().__config__()  # {"run_name": "demo"}
    ```

    Private attributes (leading underscore) are skipped.
    """

    def __config__(self, remove_keys: List[str] = None):
        """
        Extract a logging-safe configuration dictionary from this object.

        Args:
            remove_keys: Optional keys to drop from the result

        Returns:
            dict: Configuration with serializable values only
        """
        config = extract_config(self)

        if remove_keys:
            for key in remove_keys:
                config.pop(key, None)

        return config


def extract_config(obj, max_depth=UtilsConstants.MAX_RECURSION_DEPTH, current_depth=0):
    """
    Recursively convert ``obj`` into JSON-compatible configuration data.

    Scalars pass through, sequences and mappings are walked with size limits,
    torch objects become short descriptive strings and any other object with a
    ``__dict__`` is walked attribute by attribute.

    Args:
        obj: Object to describe
        max_depth: Maximum recursion depth
        current_depth: Current recursion level (internal use)

    Returns:
        dict | list | str | scalar | None
    """
    if current_depth >= max_depth:
        return str(type(obj).__name__)

    if obj is None:
        return None

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, (int, float, str, bool)):
        return obj

    if isinstance(obj, (list, tuple)):
        return [
            extract_config(item, max_depth, current_depth + 1)
            for item in obj[: UtilsConstants.MAX_LIST_ITEMS]
        ]

    if isinstance(obj, dict):
        result = {}
        for key, value in obj.items():
            if isinstance(key, str) and len(result) < UtilsConstants.MAX_DICT_KEYS:
                result[key] = extract_config(value, max_depth, current_depth + 1)
        return result

    if isinstance(obj, torch.device):
        return str(obj)

    if isinstance(obj, torch.Tensor):
        return f"<Tensor {list(obj.shape)}>"
    if isinstance(obj, torch.nn.Module):
        return f"<Module {type(obj).__name__}>"
    if isinstance(obj, torch.optim.Optimizer):
        return f"<Optimizer {type(obj).__name__}>"
    if isinstance(obj, torch.dtype):
        return str(obj)

    # Classes (e.g. an optimizer class in OptimSpec) and functions
    if callable(obj):
        return f"<function {getattr(obj, '__name__', 'unknown')}>"

    if hasattr(obj, "__dict__"):
        result = {}
        for key, value in vars(obj).items():
            if not key.startswith("_") and len(result) < UtilsConstants.MAX_DICT_KEYS:
                result[key] = extract_config(value, max_depth, current_depth + 1)
        return result

    return f"<{type(obj).__name__}>"


def create_config(model, training_master=None, extra_config: Dict[str, Any] = None) -> Dict[str, Any]:
    """
    Build the run configuration recorded by CSVListener and WandbListener.

    Combines the training master's configuration, a summary of the trainable
    model (class, topology, parameter count in millions, optimizer spec) and any
    extra values. Extra values win on key conflicts.

    Args:
        model: TrainableModel being trained
        training_master: ParameterAveragingTrainingMaster driving the run
        extra_config: Additional run metadata

    Returns:
        dict: Flat JSON-safe configuration
    """
    config = {}

    if training_master is not None:
        config.update(training_master.__config__())

    if model is not None:
        config["model"] = type(model.module).__name__
        config["model_topology"] = model.topology.value
        config["model_parameters"] = model.num_params() / 1e6
        config["optimizer"] = extract_config(model.optim_spec)

    if extra_config:
        config.update(extra_config)

    return config
