"""Configuration dataclasses for spark_layer."""

import base64
import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import cloudpickle

from spark_layer.errors import InvalidConfiguration
from spark_layer.layers import ACTIVATIONS, LOSS_FUNCTIONS, DenseLayerFactory
from spark_layer.minibatch import check_batch_size
from spark_layer.thread_config import ThreadConfig


def _encode_factory(factory: Any) -> str:
    return base64.b64encode(cloudpickle.dumps(factory)).decode("ascii")


def _decode_factory(encoded: str) -> Any:
    return cloudpickle.loads(base64.b64decode(encoded.encode("ascii")))


@dataclass
class LayerConfiguration:
    """
    Topology and hyperparameters of the layer being trained.

    The trainer keeps its own clone, and workers receive it as JSON, so a
    caller mutating its instance after handing it over has no effect on a
    round in flight.

    Attributes:
        n_in: Input width (number of features)
        n_out: Output width (number of labels / classes)
        batch_size: Examples per mini-batch
        activation: Output activation name
        loss_function: Loss minimised by the local training step
        learning_rate: Gradient descent step size
        num_iterations: Gradient steps per local fit (0 leaves params unchanged)
        seed: Seed for parameter initialisation
        layer_factory: Object with create(conf) and num_params(conf)
    """

    n_in: int = 1
    n_out: int = 1
    batch_size: int = 10
    activation: str = "sigmoid"
    loss_function: str = "mse"
    learning_rate: float = 0.1
    num_iterations: int = 1
    seed: Optional[int] = 123
    layer_factory: Any = field(default_factory=DenseLayerFactory)

    def num_params(self) -> int:
        """Parameter count declared by the layer factory for this configuration."""
        return int(self.layer_factory.num_params(self))

    def create_layer(self) -> Any:
        """Build a fresh layer instance from this configuration."""
        return self.layer_factory.create(self)

    def clone(self) -> "LayerConfiguration":
        return copy.deepcopy(self)

    def validate(self):
        """Validate configuration values."""
        check_batch_size(self.batch_size)
        if self.n_in < 1:
            raise InvalidConfiguration("n_in must be at least 1")
        if self.n_out < 1:
            raise InvalidConfiguration("n_out must be at least 1")
        if self.learning_rate < 0:
            raise InvalidConfiguration("learning_rate must be non-negative")
        if self.num_iterations < 0:
            raise InvalidConfiguration("num_iterations must be non-negative")
        if self.activation not in ACTIVATIONS:
            raise InvalidConfiguration(f"Invalid activation: {self.activation}")
        if self.loss_function not in LOSS_FUNCTIONS:
            raise InvalidConfiguration(f"Invalid loss_function: {self.loss_function}")
        if not (hasattr(self.layer_factory, "create") and hasattr(self.layer_factory, "num_params")):
            raise InvalidConfiguration(
                "layer_factory must provide create(conf) and num_params(conf)"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {
            "n_in": self.n_in,
            "n_out": self.n_out,
            "batch_size": self.batch_size,
            "activation": self.activation,
            "loss_function": self.loss_function,
            "learning_rate": self.learning_rate,
            "num_iterations": self.num_iterations,
            "seed": self.seed,
            "layer_factory": _encode_factory(self.layer_factory),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayerConfiguration":
        """Create config from dictionary."""
        data = dict(data)
        if "layer_factory" in data and isinstance(data["layer_factory"], str):
            data["layer_factory"] = _decode_factory(data["layer_factory"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def to_json(self) -> str:
        """Serialize config to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "LayerConfiguration":
        """Create config from JSON string."""
        return cls.from_dict(json.loads(json_str))


@dataclass
class TrainerConfig:
    """Execution settings for SparkLayerTrainer."""

    # Math-library threads per executor Python worker
    thread_config: ThreadConfig = field(default_factory=ThreadConfig)

    # Thread pool size when running without a SparkContext
    num_workers: int = 4

    # "tree" uses RDD.treeReduce, "linear" uses RDD.reduce
    reduction: str = "tree"
    tree_depth: int = 2

    # Redistribute examples into this many partitions before batching
    num_partitions: Optional[int] = None

    verbose: bool = True

    def validate(self):
        """Validate configuration values."""
        if self.num_workers < 1:
            raise InvalidConfiguration("num_workers must be at least 1")
        if self.reduction not in ("tree", "linear"):
            raise InvalidConfiguration(f"Invalid reduction: {self.reduction}")
        if self.tree_depth < 1:
            raise InvalidConfiguration("tree_depth must be at least 1")
        if self.num_partitions is not None and self.num_partitions < 1:
            raise InvalidConfiguration("num_partitions must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_config": self.thread_config.to_dict(),
            "num_workers": self.num_workers,
            "reduction": self.reduction,
            "tree_depth": self.tree_depth,
            "num_partitions": self.num_partitions,
            "verbose": self.verbose,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainerConfig":
        return cls(
            thread_config=ThreadConfig.from_dict(data.get("thread_config", {})),
            num_workers=data.get("num_workers", 4),
            reduction=data.get("reduction", "tree"),
            tree_depth=data.get("tree_depth", 2),
            num_partitions=data.get("num_partitions"),
            verbose=data.get("verbose", True),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "TrainerConfig":
        return cls.from_dict(json.loads(json_str))
