"""Exception types raised by spark_layer."""


class LayerTrainingError(Exception):
    """Base class for all spark_layer errors."""


class InvalidConfiguration(LayerTrainingError, ValueError):
    """Non-positive batch size or an otherwise malformed configuration."""


class ParameterSizeMismatch(LayerTrainingError):
    """
    A parameter vector's length disagrees with the declared parameter count.

    Raised on the driver before any task is dispatched, or from a worker
    task when the broadcast vector does not fit the rebuilt layer. The
    vector is never truncated or padded.
    """

    def __init__(self, expected: int, actual: int, where: str = "layer"):
        self.expected = expected
        self.actual = actual
        self.where = where
        super().__init__(
            f"Number of params {expected} was not equal to {actual} ({where})"
        )


class EmptyDataset(LayerTrainingError):
    """There are no mini-batches to average."""


class NotFitted(LayerTrainingError):
    """Prediction requested before any successful fit."""
