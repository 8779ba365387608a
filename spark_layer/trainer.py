"""Layer trainer orchestrator for the driver node."""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from spark_layer.averaging import ParameterAverager
from spark_layer.config import LayerConfiguration, TrainerConfig
from spark_layer.errors import EmptyDataset, NotFitted, ParameterSizeMismatch
from spark_layer.minibatch import MiniBatchPartitioner, is_distributed
from spark_layer.sources import CSVRecordReader, from_labeled_points, from_text_file, is_vectorized
from spark_layer.utils.logging import MetricsLogger, get_logger
from spark_layer.worker import LocalTrainer, TrainingContext


class TrainerState(Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    FITTING = "fitting"
    FITTED = "fitted"


@dataclass
class RoundResult:
    """Summary of one partition -> train -> average round."""

    num_mini_batches: int
    num_params: int
    training_time_seconds: float
    distributed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_mini_batches": self.num_mini_batches,
            "num_params": self.num_params,
            "training_time_seconds": self.training_time_seconds,
            "distributed": self.distributed,
        }


class SparkLayerTrainer:
    """
    Layer trainer running on the Spark DRIVER node.

    Responsibilities:
    - Own a private clone of the layer configuration
    - Split the training data into mini-batches
    - Broadcast the serialized configuration and initial parameters
    - Run one LocalTrainer task per mini-batch
    - Average the results into the canonical layer
    - Serve predictions from the canonical layer

    With spark_context=None and local (non-RDD) data, tasks run on a
    thread pool in this process instead of on executors.
    """

    def __init__(
        self,
        spark_context: Any,
        conf: LayerConfiguration,
        trainer_config: Optional[TrainerConfig] = None
    ):
        """
        Initialize the trainer.

        Args:
            spark_context: SparkContext (can be None for local training)
            conf: Layer configuration; cloned, so later changes by the
                caller are not seen
            trainer_config: Execution settings

        Raises:
            InvalidConfiguration: conf or trainer_config is malformed
            ParameterSizeMismatch: the factory's declared parameter count
                disagrees with a layer it builds
        """
        self._state = TrainerState.UNCONFIGURED
        self.spark_context = spark_context

        self.conf = conf.clone()
        self.conf.validate()

        self.trainer_config = trainer_config or TrainerConfig()
        self.trainer_config.validate()

        self.logger = get_logger("trainer")
        self.metrics = MetricsLogger("trainer")
        self._averager = ParameterAverager(
            reduction=self.trainer_config.reduction,
            tree_depth=self.trainer_config.tree_depth,
        )

        self._check_parameter_size(self.conf.create_layer().params())

        self._layer: Any = None
        self._training_history: List[RoundResult] = []
        self._state = TrainerState.CONFIGURED

        if self.trainer_config.verbose:
            self.logger.info(
                f"SparkLayerTrainer configured: n_in={self.conf.n_in}, n_out={self.conf.n_out}, "
                f"batch_size={self.conf.batch_size}, params={self.conf.num_params()}"
            )

    @property
    def state(self) -> TrainerState:
        return self._state

    def _check_parameter_size(self, params: np.ndarray):
        expected = self.conf.num_params()
        if params.size != expected:
            raise ParameterSizeMismatch(expected, int(params.size), "driver")

    # Training

    def fit(
        self,
        source: Any,
        label_index: Optional[int] = None,
        record_reader: Any = None
    ) -> Any:
        """
        Fit the layer on a text file, LabeledPoint data or Example data.

        Args:
            source: Path to a line-oriented text file, or an RDD / iterable
                of pyspark.mllib LabeledPoint, or an RDD / iterable of
                already vectorized Example
            label_index: Label column (required for a path)
            record_reader: Record parser for a path (CSVRecordReader by default)

        Returns:
            The trained layer
        """
        if isinstance(source, str):
            if label_index is None:
                raise ValueError("label_index is required when fitting from a path")
            examples = from_text_file(
                self.spark_context,
                source,
                label_index,
                record_reader or CSVRecordReader(),
                self.conf.n_out,
            )
            return self.fit_dataset(examples)

        if not is_distributed(source):
            # Materialized so the first item can be inspected
            source = list(source)

        if is_vectorized(source):
            return self.fit_dataset(source)
        return self.fit_dataset(from_labeled_points(source, self.conf.n_out))

    def fit_labeled_points(self, points: Any) -> Any:
        """Fit on an RDD or iterable of LabeledPoint."""
        return self.fit_dataset(from_labeled_points(points, self.conf.n_out))

    def fit_dataset(self, examples: Any) -> Any:
        """
        Fit on already vectorized examples.

        Steps:
        1. Partition examples into mini-batches of conf.batch_size
        2. Build the canonical layer and check its parameter count
        3. Broadcast config JSON + initial parameters, one task per mini-batch
        4. Average the task results (sum / mini-batch count)
        5. Install the average into the canonical layer

        A failure leaves the previously trained layer (if any) in place.

        Args:
            examples: RDD or iterable of Example

        Returns:
            The trained layer
        """
        previous_state = self._state
        self._state = TrainerState.FITTING

        try:
            layer, result = self._fit_round(examples)
        except Exception as e:
            self._state = previous_state
            if self.trainer_config.verbose:
                self.logger.error(f"Training round failed: {e}")
            raise

        self._layer = layer
        self._training_history.append(result)
        self._state = TrainerState.FITTED
        return layer

    def _fit_round(self, examples: Any) -> Tuple[Any, RoundResult]:
        start_time = time.time()

        partitioner = MiniBatchPartitioner(
            self.conf.batch_size,
            num_partitions=self.trainer_config.num_partitions,
        )
        mini_batches = partitioner.partition(examples)

        layer = self.conf.create_layer()
        params = layer.params()
        self._check_parameter_size(params)

        distributed = is_distributed(mini_batches)
        if distributed:
            count, new_params = self._execute_spark_round(mini_batches, params)
        else:
            count, new_params = self._execute_local_round(mini_batches, params)

        layer.set_parameters(new_params)

        elapsed = time.time() - start_time
        self.metrics.record("round_seconds", elapsed)
        self.metrics.record("mini_batches", count)

        if self.trainer_config.verbose:
            self.logger.info(
                f"Averaged {count} mini-batches into {params.size} parameters in {elapsed:.2f}s"
            )
            self.metrics.log_stats()

        return layer, RoundResult(
            num_mini_batches=count,
            num_params=int(params.size),
            training_time_seconds=elapsed,
            distributed=distributed,
        )

    def _execute_spark_round(self, mini_batches: Any, params: np.ndarray) -> Tuple[int, np.ndarray]:
        """Train all mini-batches on executors and average the results."""
        spark_context = self.spark_context or mini_batches.context

        mini_batches = mini_batches.cache()
        try:
            count = mini_batches.count()
            if count == 0:
                raise EmptyDataset("No examples to train on")

            if self.trainer_config.verbose:
                self.logger.info(f"Submitting {count} mini-batch tasks to executors")

            params_bc = spark_context.broadcast(params)
            try:
                context = TrainingContext(
                    config_json=self.conf.to_json(),
                    initial_params=params_bc,
                    thread_config=self.trainer_config.thread_config.to_dict(),
                )
                results = mini_batches.map(LocalTrainer(context))
                return count, self._averager.reduce(results, count)
            finally:
                params_bc.unpersist()
        finally:
            mini_batches.unpersist()

    def _execute_local_round(self, mini_batches: List[Any], params: np.ndarray) -> Tuple[int, np.ndarray]:
        """Train all mini-batches on a local thread pool and average the results."""
        count = len(mini_batches)
        if count == 0:
            raise EmptyDataset("No examples to train on")

        shared_params = params.copy()
        shared_params.setflags(write=False)
        context = TrainingContext(config_json=self.conf.to_json(), initial_params=shared_params)

        max_workers = min(self.trainer_config.num_workers, count)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(LocalTrainer(context), mini_batches))

        return count, self._averager.reduce(results, count)

    # Prediction

    def get_layer(self) -> Any:
        """The canonical trained layer."""
        if self._layer is None:
            raise NotFitted("Layer has not been fitted yet")
        return self._layer

    def predict(self, features: Any) -> Any:
        """
        Apply the trained layer to a vector or a matrix of row vectors.

        Args:
            features: numpy 1-D vector or 2-D matrix, or a pyspark.mllib
                Vector / Matrix

        Returns:
            Output of the same kind: numpy in, numpy out; mllib in, mllib out
        """
        layer = self.get_layer()

        from pyspark.mllib.linalg import Matrices, Matrix, Vector, Vectors

        if isinstance(features, Matrix):
            output = np.atleast_2d(layer.activate(features.toArray()))
            rows, cols = output.shape
            # mllib dense matrices are column-major
            return Matrices.dense(rows, cols, output.ravel(order="F").tolist())

        if isinstance(features, Vector):
            return Vectors.dense(layer.activate(features.toArray()))

        inputs = np.asarray(features, dtype=np.float64)
        if inputs.ndim not in (1, 2) or inputs.shape[-1] != self.conf.n_in:
            raise ValueError(
                f"Expected a vector or matrix with {self.conf.n_in} columns, got shape {inputs.shape}"
            )
        return layer.activate(inputs)

    def get_training_history(self) -> List[Dict[str, Any]]:
        """Per-round summaries, oldest first."""
        return [r.to_dict() for r in self._training_history]

    @staticmethod
    def train(
        data: Any,
        conf: LayerConfiguration,
        trainer_config: Optional[TrainerConfig] = None
    ) -> Any:
        """
        Build a trainer and fit it on LabeledPoint data in one call.

        Args:
            data: RDD (or local iterable) of LabeledPoint
            conf: Layer configuration
            trainer_config: Execution settings

        Returns:
            The trained layer
        """
        spark_context = data.context if is_distributed(data) else None
        trainer = SparkLayerTrainer(spark_context, conf, trainer_config)
        return trainer.fit(data)
