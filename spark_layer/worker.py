"""Worker-side training task, executed once per mini-batch on executors."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
from pyspark.broadcast import Broadcast

from spark_layer.config import LayerConfiguration
from spark_layer.errors import ParameterSizeMismatch
from spark_layer.minibatch import MiniBatch
from spark_layer.thread_config import ThreadConfig, configure_threads
from spark_layer.utils.logging import get_logger

_threads_lock = threading.Lock()
_threads_configured = False


def _configure_worker_threads(thread_config: Optional[Dict[str, Any]]):
    """Apply the thread caps once per Python worker process."""
    global _threads_configured
    if thread_config is None:
        return
    with _threads_lock:
        if not _threads_configured:
            configure_threads(ThreadConfig.from_dict(thread_config))
            _threads_configured = True


@dataclass(frozen=True, eq=False)
class TrainingContext:
    """
    Read-only state shared by every task of one training round.

    Captured when the tasks are created; initial_params is either a numpy
    vector (local mode) or a Spark Broadcast wrapping one.
    """

    config_json: str
    initial_params: Any
    thread_config: Optional[Dict[str, Any]] = None

    def get_initial_params(self) -> np.ndarray:
        """Return a private copy of the initial parameter vector."""
        value = self.initial_params
        if isinstance(value, Broadcast):
            value = value.value
        return np.array(value, dtype=np.float64)


def train_mini_batch(config_json: str, initial_params: np.ndarray, batch: MiniBatch) -> np.ndarray:
    """
    Train a private layer on one mini-batch.

    Steps:
    1. Rebuild the configuration and a fresh layer from JSON
    2. Check the initial vector against the declared parameter count
    3. Install the initial parameters and fit on the batch
    4. Return the resulting parameter vector

    Args:
        config_json: LayerConfiguration.to_json() output
        initial_params: Parameters to start from (not modified)
        batch: Mini-batch to train on

    Returns:
        Parameter vector after local training

    Raises:
        ParameterSizeMismatch: initial_params does not fit the configuration
    """
    conf = LayerConfiguration.from_json(config_json)
    params = np.array(initial_params, dtype=np.float64)

    expected = conf.num_params()
    if params.ndim != 1 or params.size != expected:
        raise ParameterSizeMismatch(expected, int(params.size), "worker")

    layer = conf.create_layer()
    layer.set_parameters(params)
    layer.fit(batch.features, batch.labels)
    return layer.params()


class LocalTrainer:
    """
    Callable mapped over the mini-batch RDD (or run on the local pool).

    Holds nothing but its TrainingContext, so concurrent tasks share no
    mutable state: each rebuilds its own configuration and layer.
    """

    def __init__(self, context: TrainingContext):
        self.context = context

    def __call__(self, batch: MiniBatch) -> np.ndarray:
        return self.train(batch)

    def train(self, batch: MiniBatch) -> np.ndarray:
        """Train on one mini-batch and return the new parameter vector."""
        _configure_worker_threads(self.context.thread_config)

        start_time = time.time()
        result = train_mini_batch(
            self.context.config_json,
            self.context.get_initial_params(),
            batch,
        )

        get_logger("worker").debug(
            f"Trained mini-batch of {batch.batch_size} examples "
            f"in {time.time() - start_time:.3f}s"
        )
        return result
