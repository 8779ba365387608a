"""Examples, mini-batches and the mini-batch partitioner."""

import itertools
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Optional

import numpy as np
from pyspark import RDD

from spark_layer.errors import InvalidConfiguration


def is_distributed(collection: Any) -> bool:
    """True for Spark RDDs, False for local Python iterables."""
    return isinstance(collection, RDD)


@dataclass
class Example:
    """One vectorized training example."""

    features: np.ndarray
    label: np.ndarray

    def __post_init__(self):
        self.features = np.asarray(self.features, dtype=np.float64).ravel()
        self.label = np.asarray(self.label, dtype=np.float64).ravel()


@dataclass
class MiniBatch:
    """A group of examples stacked row-wise, in input order."""

    features: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    labels: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))

    @classmethod
    def merge(cls, examples: List[Example]) -> "MiniBatch":
        """Stack a non-empty list of examples into one mini-batch."""
        return cls(
            features=np.vstack([e.features for e in examples]),
            labels=np.vstack([e.label for e in examples]),
        )

    @property
    def batch_size(self) -> int:
        return int(self.features.shape[0])

    def __len__(self) -> int:
        return self.batch_size

    def examples(self) -> List[Example]:
        """Unstack back into individual examples."""
        return [
            Example(features=self.features[i], label=self.labels[i])
            for i in range(self.batch_size)
        ]


def check_batch_size(batch_size: int):
    if not isinstance(batch_size, (int, np.integer)) or batch_size <= 0:
        raise InvalidConfiguration(f"batch_size must be a positive integer, got {batch_size!r}")


def iter_mini_batches(examples: Iterable[Example], batch_size: int) -> Iterator[MiniBatch]:
    """
    Group an ordered stream of examples into mini-batches.

    Consecutive runs of batch_size examples form one batch; the last batch
    holds whatever is left. An empty stream yields nothing.

    Args:
        examples: Examples of one partition, in order
        batch_size: Maximum examples per mini-batch

    Yields:
        MiniBatch instances
    """
    check_batch_size(batch_size)

    iterator = iter(examples)
    while True:
        chunk = list(itertools.islice(iterator, batch_size))
        if not chunk:
            return
        yield MiniBatch.merge(chunk)


class MiniBatchPartitioner:
    """
    Regroups a collection of examples into fixed-size mini-batches.

    For an RDD each partition is batched independently with mapPartitions,
    so a partition of N examples produces ceil(N / batch_size) batches and
    order is kept within, but not across, partitions. A local iterable is
    treated as a single partition.
    """

    def __init__(self, batch_size: int, num_partitions: Optional[int] = None):
        """
        Initialize partitioner.

        Args:
            batch_size: Maximum examples per mini-batch
            num_partitions: Optional partition count to redistribute the
                RDD into before batching
        """
        check_batch_size(batch_size)
        self.batch_size = int(batch_size)
        self.num_partitions = num_partitions

    def _batch_partition(self, iterator: Iterator[Example]) -> Iterator[MiniBatch]:
        return iter_mini_batches(iterator, self.batch_size)

    def partition(self, examples: Any) -> Any:
        """
        Partition examples into mini-batches.

        Args:
            examples: RDD of Example, or a local iterable of Example

        Returns:
            RDD of MiniBatch for an RDD input, otherwise a list of MiniBatch
        """
        if is_distributed(examples):
            if self.num_partitions is not None:
                examples = examples.repartition(self.num_partitions)
            return examples.mapPartitions(self._batch_partition)

        return list(iter_mini_batches(examples, self.batch_size))
