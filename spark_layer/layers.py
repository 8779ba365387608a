"""Layer interface and the numpy fully connected layer.

A layer exposes its trainable weights as one flat float64 vector so the
driver can broadcast it and the workers' results can be summed element-wise.
"""

from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from spark_layer.errors import ParameterSizeMismatch

ACTIVATIONS = ("identity", "sigmoid", "tanh", "relu", "softmax")
LOSS_FUNCTIONS = ("mse", "xent", "mcxent")

_EPS = 1e-12


class Layer(ABC):
    """
    A trainable unit holding one flat parameter vector.

    Implementations must keep params(), set_parameters() and num_params()
    consistent: len(params()) == num_params() at all times.
    """

    @abstractmethod
    def params(self) -> np.ndarray:
        """Return a copy of the parameters as a flat float64 vector."""
        pass

    @abstractmethod
    def num_params(self) -> int:
        pass

    @abstractmethod
    def set_parameters(self, params: np.ndarray):
        """Replace all parameters with the given flat vector."""
        pass

    @abstractmethod
    def activate(self, inputs: np.ndarray) -> np.ndarray:
        """Forward transform a vector (n_in,) or a matrix (rows, n_in)."""
        pass

    @abstractmethod
    def fit(self, features: np.ndarray, labels: np.ndarray):
        """Run one local training step on a mini-batch."""
        pass

    def _check_size(self, params: np.ndarray):
        if params.ndim != 1 or params.shape[0] != self.num_params():
            raise ParameterSizeMismatch(self.num_params(), int(params.size), "set_parameters")


class LayerFactory(ABC):
    """Builds layers from a LayerConfiguration and reports their size."""

    @abstractmethod
    def create(self, conf: Any) -> Layer:
        pass

    @abstractmethod
    def num_params(self, conf: Any) -> int:
        pass


def activation_forward(name: str, z: np.ndarray) -> np.ndarray:
    """Apply the named activation to pre-activations z of shape (rows, n_out)."""
    if name == "identity":
        return z
    if name == "sigmoid":
        return 1.0 / (1.0 + np.exp(-z))
    if name == "tanh":
        return np.tanh(z)
    if name == "relu":
        return np.maximum(z, 0.0)
    if name == "softmax":
        shifted = z - z.max(axis=1, keepdims=True)
        exp = np.exp(shifted)
        return exp / exp.sum(axis=1, keepdims=True)
    raise ValueError(f"Unknown activation: {name}")


def activation_backward(
    name: str,
    z: np.ndarray,
    out: np.ndarray,
    grad_out: np.ndarray
) -> np.ndarray:
    """Chain dL/d(out) through the activation to get dL/dz."""
    if name == "identity":
        return grad_out
    if name == "sigmoid":
        return grad_out * out * (1.0 - out)
    if name == "tanh":
        return grad_out * (1.0 - out ** 2)
    if name == "relu":
        return grad_out * (z > 0)
    if name == "softmax":
        # Jacobian-vector product of softmax, row by row
        return out * (grad_out - np.sum(grad_out * out, axis=1, keepdims=True))
    raise ValueError(f"Unknown activation: {name}")


def loss_value(name: str, out: np.ndarray, labels: np.ndarray) -> float:
    """Mean loss over the rows of a batch."""
    if name == "mse":
        return float(0.5 * np.mean(np.sum((out - labels) ** 2, axis=1)))
    clipped = np.clip(out, _EPS, 1.0 - _EPS)
    if name == "xent":
        per_row = -np.sum(labels * np.log(clipped) + (1 - labels) * np.log(1 - clipped), axis=1)
        return float(np.mean(per_row))
    if name == "mcxent":
        return float(np.mean(-np.sum(labels * np.log(clipped), axis=1)))
    raise ValueError(f"Unknown loss function: {name}")


def output_delta(
    loss: str,
    activation: str,
    z: np.ndarray,
    out: np.ndarray,
    labels: np.ndarray
) -> np.ndarray:
    """dL/dz for one batch, shape (rows, n_out)."""
    # Matching pairs collapse to (out - labels)
    if (loss == "xent" and activation == "sigmoid") or (loss == "mcxent" and activation == "softmax"):
        return out - labels

    if loss == "mse":
        grad_out = out - labels
    elif loss == "xent":
        clipped = np.clip(out, _EPS, 1.0 - _EPS)
        grad_out = (clipped - labels) / (clipped * (1.0 - clipped))
    elif loss == "mcxent":
        grad_out = -labels / np.clip(out, _EPS, None)
    else:
        raise ValueError(f"Unknown loss function: {loss}")

    return activation_backward(activation, z, out, grad_out)


class DenseLayer(Layer):
    """
    Fully connected layer out = activation(x @ W + b) in numpy.

    Parameters are laid out as [W.ravel() (row-major, n_in x n_out), b].
    fit() runs num_iterations full-batch gradient descent steps.
    """

    def __init__(
        self,
        n_in: int,
        n_out: int,
        activation: str = "sigmoid",
        loss_function: str = "mse",
        learning_rate: float = 0.1,
        num_iterations: int = 1,
        seed=None
    ):
        self.n_in = n_in
        self.n_out = n_out
        self.activation = activation
        self.loss_function = loss_function
        self.learning_rate = learning_rate
        self.num_iterations = num_iterations

        rng = np.random.default_rng(seed)
        scale = np.sqrt(2.0 / (n_in + n_out))
        self.W = rng.normal(0.0, scale, size=(n_in, n_out))
        self.b = np.zeros(n_out, dtype=np.float64)

    def params(self) -> np.ndarray:
        return np.concatenate([self.W.ravel(), self.b]).astype(np.float64)

    def num_params(self) -> int:
        return self.n_in * self.n_out + self.n_out

    def set_parameters(self, params: np.ndarray):
        params = np.asarray(params, dtype=np.float64)
        self._check_size(params)

        split = self.n_in * self.n_out
        self.W = params[:split].reshape(self.n_in, self.n_out).copy()
        self.b = params[split:].copy()

    def _pre_activation(self, x: np.ndarray) -> np.ndarray:
        return x @ self.W + self.b

    def activate(self, inputs: np.ndarray) -> np.ndarray:
        x = np.asarray(inputs, dtype=np.float64)
        single = x.ndim == 1
        x = np.atleast_2d(x)

        out = activation_forward(self.activation, self._pre_activation(x))
        return out[0] if single else out

    def score(self, features: np.ndarray, labels: np.ndarray) -> float:
        """Loss of the current parameters on a batch."""
        out = np.atleast_2d(self.activate(features))
        return loss_value(self.loss_function, out, np.atleast_2d(labels))

    def fit(self, features: np.ndarray, labels: np.ndarray):
        x = np.atleast_2d(np.asarray(features, dtype=np.float64))
        y = np.asarray(labels, dtype=np.float64).reshape(x.shape[0], self.n_out)
        rows = x.shape[0]

        for _ in range(self.num_iterations):
            z = self._pre_activation(x)
            out = activation_forward(self.activation, z)
            delta = output_delta(self.loss_function, self.activation, z, out, y)

            self.W -= self.learning_rate * (x.T @ delta) / rows
            self.b -= self.learning_rate * delta.mean(axis=0)


class DenseLayerFactory(LayerFactory):
    """Default factory: builds DenseLayer instances from a configuration."""

    def create(self, conf: Any) -> DenseLayer:
        return DenseLayer(
            n_in=conf.n_in,
            n_out=conf.n_out,
            activation=conf.activation,
            loss_function=conf.loss_function,
            learning_rate=conf.learning_rate,
            num_iterations=conf.num_iterations,
            seed=conf.seed,
        )

    def num_params(self, conf: Any) -> int:
        return conf.n_in * conf.n_out + conf.n_out

    def __repr__(self) -> str:
        return "DenseLayerFactory()"
