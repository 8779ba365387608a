"""Adapters turning each supported input form into Example collections.

Three sources feed the trainer:
- line-oriented text records parsed by a record reader
- MLlib LabeledPoint collections
- already vectorized Example collections (used as-is)

pandas DataFrames are accepted as a convenience for small local datasets.
Each adapter works on a Spark RDD or, in local mode, on a Python iterable.
"""

import functools
from typing import Any, Callable, List, Optional

import numpy as np

from spark_layer.errors import InvalidConfiguration
from spark_layer.minibatch import Example, is_distributed


def _map(collection: Any, fn: Callable[[Any], Any]) -> Any:
    if is_distributed(collection):
        return collection.map(fn)
    return [fn(item) for item in collection]


def _is_record_line(line: str) -> bool:
    return bool(line.strip())


def is_vectorized(collection: Any) -> bool:
    """
    True when the collection already holds Example instances.

    Only the first element is inspected (rdd.take(1) for an RDD); an empty
    collection counts as not vectorized.
    """
    if is_distributed(collection):
        head = collection.take(1)
    else:
        head = list(collection[:1])
    return bool(head) and isinstance(head[0], Example)


def encode_label(value: float, num_labels: int) -> np.ndarray:
    """
    Encode a scalar label as the target vector of a num_labels-wide layer.

    With one output the label is used as-is; otherwise it must be an
    integer class index and is one-hot encoded.
    """
    if num_labels == 1:
        return np.array([float(value)], dtype=np.float64)

    if not np.isfinite(value):
        raise InvalidConfiguration(f"Label {value!r} is not a class index")
    index = int(value)
    if index != value or not 0 <= index < num_labels:
        raise InvalidConfiguration(
            f"Label {value!r} is not a class index in [0, {num_labels})"
        )
    outcome = np.zeros(num_labels, dtype=np.float64)
    outcome[index] = 1.0
    return outcome


class CSVRecordReader:
    """Parses one delimited text line into a vector of floats."""

    def __init__(self, delimiter: str = ","):
        self.delimiter = delimiter

    def parse(self, line: str) -> np.ndarray:
        try:
            return np.array(
                [float(value) for value in line.strip().split(self.delimiter)],
                dtype=np.float64,
            )
        except ValueError as e:
            raise ValueError(f"Malformed record: {line!r}") from e


class RecordReaderFunction:
    """
    Maps one text record to an Example.

    The column at label_index is the label (negative indices count from
    the end); all other columns, in order, are the features.
    """

    def __init__(self, record_reader: Any, label_index: int, num_labels: int):
        self.record_reader = record_reader
        self.label_index = label_index
        self.num_labels = num_labels

    def __call__(self, line: str) -> Example:
        record = self.record_reader.parse(line)

        index = self.label_index
        if index < 0:
            index += record.size
        if not 0 <= index < record.size:
            raise InvalidConfiguration(
                f"label_index {self.label_index} out of range for record of {record.size} columns"
            )

        return Example(
            features=np.delete(record, index),
            label=encode_label(record[index], self.num_labels),
        )


def labeled_point_to_example(point: Any, num_labels: int) -> Example:
    """Convert a pyspark.mllib LabeledPoint to an Example."""
    return Example(
        features=point.features.toArray(),
        label=encode_label(point.label, num_labels),
    )


def from_labeled_points(points: Any, num_labels: int) -> Any:
    """
    Vectorize a collection of LabeledPoint.

    Args:
        points: RDD or iterable of pyspark.mllib.regression.LabeledPoint
        num_labels: Output width of the layer

    Returns:
        RDD or list of Example
    """
    return _map(points, functools.partial(labeled_point_to_example, num_labels=num_labels))


def from_text_file(
    spark_context: Any,
    path: str,
    label_index: int,
    record_reader: Any,
    num_labels: int
) -> Any:
    """
    Read and vectorize a line-oriented text file. Blank lines are skipped.

    Args:
        spark_context: SparkContext, or None to read the file locally
        path: File path (anything sc.textFile accepts)
        label_index: Column holding the label
        record_reader: Object with parse(line) -> np.ndarray
        num_labels: Output width of the layer

    Returns:
        RDD or list of Example
    """
    to_example = RecordReaderFunction(record_reader, label_index, num_labels)

    if spark_context is not None:
        lines = spark_context.textFile(path).filter(_is_record_line)
    else:
        with open(path, "r") as f:
            lines = [line for line in f if _is_record_line(line)]

    return _map(lines, to_example)


def from_pandas(
    data: Any,
    label_column: str,
    num_labels: int,
    spark_context: Any = None,
    num_slices: Optional[int] = None
) -> Any:
    """
    Vectorize a pandas DataFrame.

    Args:
        data: DataFrame with numeric feature columns and one label column
        label_column: Name of the label column
        num_labels: Output width of the layer
        spark_context: SparkContext to parallelize into, or None for a list
        num_slices: Partition count for parallelize

    Returns:
        RDD or list of Example
    """
    if label_column not in data.columns:
        raise InvalidConfiguration(f"Label column {label_column!r} not in DataFrame")

    features = data.drop(columns=[label_column]).to_numpy(dtype=np.float64)
    labels = data[label_column].to_numpy()

    examples: List[Example] = [
        Example(features=features[i], label=encode_label(labels[i], num_labels))
        for i in range(len(data))
    ]

    if spark_context is not None:
        return spark_context.parallelize(examples, num_slices)
    return examples
