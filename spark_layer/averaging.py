"""Parameter averaging over worker results."""

import functools
from typing import Any

import numpy as np

from spark_layer.errors import EmptyDataset, InvalidConfiguration, ParameterSizeMismatch
from spark_layer.minibatch import is_distributed
from spark_layer.utils.logging import get_logger


def add_vectors(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    """
    Element-wise sum of two parameter vectors.

    Associative and commutative, and returns a new array without touching
    either argument, so Spark may combine partial sums in any order and
    reuse its inputs.
    """
    left = np.asarray(left, dtype=np.float64)
    right = np.asarray(right, dtype=np.float64)
    if left.shape != right.shape:
        raise ParameterSizeMismatch(int(left.size), int(right.size), "reduction")
    return np.add(left, right)


class ParameterAverager:
    """
    Sums worker parameter vectors and divides by the mini-batch count.

    Every mini-batch gets equal weight, including a short final batch.
    """

    def __init__(self, reduction: str = "tree", tree_depth: int = 2):
        """
        Initialize averager.

        Args:
            reduction: "tree" (RDD.treeReduce) or "linear" (RDD.reduce)
            tree_depth: Depth of the aggregation tree for "tree"
        """
        if reduction not in ("tree", "linear"):
            raise InvalidConfiguration(f"Invalid reduction: {reduction}")
        self.reduction = reduction
        self.tree_depth = tree_depth
        self.logger = get_logger("averaging")

    def sum(self, vectors: Any) -> np.ndarray:
        """
        Reduce vectors with add_vectors.

        Args:
            vectors: RDD of parameter vectors, or a local iterable

        Returns:
            Element-wise sum
        """
        if is_distributed(vectors):
            if self.reduction == "tree":
                return vectors.treeReduce(add_vectors, depth=self.tree_depth)
            return vectors.reduce(add_vectors)

        vectors = list(vectors)
        if not vectors:
            raise EmptyDataset("No parameter vectors to sum")
        return functools.reduce(add_vectors, vectors)

    def reduce(self, vectors: Any, count: int) -> np.ndarray:
        """
        Average worker results.

        Args:
            vectors: RDD or iterable of parameter vectors, one per mini-batch
            count: Number of mini-batches that contributed

        Returns:
            sum(vectors) / count
        """
        if count <= 0:
            raise EmptyDataset("Cannot average over zero mini-batches")

        total = self.sum(vectors)
        self.logger.debug(f"Averaging {count} parameter vectors ({self.reduction} reduction)")
        return total / count
