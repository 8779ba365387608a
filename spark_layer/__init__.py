"""
spark_layer - distributed mini-batch parameter averaging for one layer on PySpark.

Training data is split into mini-batches, a private copy of the layer is
trained on every mini-batch in parallel on the executors, and the resulting
parameter vectors are averaged into one layer on the driver.
"""

from spark_layer.config import LayerConfiguration, TrainerConfig
from spark_layer.errors import (
    EmptyDataset,
    InvalidConfiguration,
    LayerTrainingError,
    NotFitted,
    ParameterSizeMismatch,
)
from spark_layer.layers import DenseLayer, DenseLayerFactory, Layer, LayerFactory
from spark_layer.minibatch import Example, MiniBatch, MiniBatchPartitioner
from spark_layer.averaging import ParameterAverager, add_vectors
from spark_layer.worker import LocalTrainer, TrainingContext
from spark_layer.sources import CSVRecordReader, RecordReaderFunction
from spark_layer.trainer import SparkLayerTrainer, TrainerState
from spark_layer.thread_config import ThreadConfig, configure_threads

__version__ = "0.1.0"
__all__ = [
    "SparkLayerTrainer",
    "TrainerState",
    "LayerConfiguration",
    "TrainerConfig",
    "ThreadConfig",
    "configure_threads",
    "Layer",
    "LayerFactory",
    "DenseLayer",
    "DenseLayerFactory",
    "Example",
    "MiniBatch",
    "MiniBatchPartitioner",
    "ParameterAverager",
    "add_vectors",
    "LocalTrainer",
    "TrainingContext",
    "CSVRecordReader",
    "RecordReaderFunction",
    "LayerTrainingError",
    "InvalidConfiguration",
    "ParameterSizeMismatch",
    "EmptyDataset",
    "NotFitted",
]
