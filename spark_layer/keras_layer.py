"""TensorFlow Keras backed layer.

Keras models keep their weights as a list of float32 tensors; the trainer
moves parameters around as one flat float64 numpy vector. KerasLayer bridges
the two:

- params(): concatenate model.get_weights() in layer order, ravelled
- set_parameters(): split the vector back by weight shapes, model.set_weights()
- fit(): GradientTape forward/backward pass, applied with SGD

TensorFlow is imported lazily so the package imports without it.
"""

from typing import Any, List, Tuple

import numpy as np

from spark_layer.layers import Layer, LayerFactory

_KERAS_ACTIVATIONS = {
    "identity": "linear",
    "sigmoid": "sigmoid",
    "tanh": "tanh",
    "relu": "relu",
    "softmax": "softmax",
}


class KerasLayer(Layer):
    """Single tf.keras Dense layer exposed through the flat-vector Layer API."""

    def __init__(self, conf: Any):
        """
        Build the Keras model for a configuration.

        Args:
            conf: LayerConfiguration (n_in, n_out, activation, loss_function,
                learning_rate, num_iterations, seed are used)
        """
        import tensorflow as tf

        self._tf = tf
        self.n_in = conf.n_in
        self.n_out = conf.n_out
        self.num_iterations = conf.num_iterations

        initializer = tf.keras.initializers.GlorotNormal(seed=conf.seed)
        inputs = tf.keras.Input(shape=(conf.n_in,), name="input")
        outputs = tf.keras.layers.Dense(
            conf.n_out,
            activation=_KERAS_ACTIVATIONS[conf.activation],
            kernel_initializer=initializer,
            bias_initializer="zeros",
            name="output",
        )(inputs)
        self._model = tf.keras.Model(inputs, outputs, name="spark_layer")

        self._loss_fn = self._create_loss_function(conf.loss_function)
        self._optimizer = tf.keras.optimizers.SGD(learning_rate=conf.learning_rate)
        self._shapes: List[Tuple[int, ...]] = [w.shape for w in self._model.get_weights()]

    def _create_loss_function(self, name: str) -> Any:
        tf = self._tf
        loss_map = {
            "mse": tf.keras.losses.MeanSquaredError,
            "xent": tf.keras.losses.BinaryCrossentropy,
            "mcxent": tf.keras.losses.CategoricalCrossentropy,
        }
        return loss_map[name]()

    def get_model(self) -> Any:
        """Underlying tf.keras.Model."""
        return self._model

    def params(self) -> np.ndarray:
        weights = self._model.get_weights()
        return np.concatenate([w.ravel() for w in weights]).astype(np.float64)

    def num_params(self) -> int:
        return int(sum(int(np.prod(shape)) for shape in self._shapes))

    def set_parameters(self, params: np.ndarray):
        params = np.asarray(params, dtype=np.float64)
        self._check_size(params)

        weights = []
        offset = 0
        for shape in self._shapes:
            size = int(np.prod(shape))
            weights.append(params[offset:offset + size].reshape(shape).astype(np.float32))
            offset += size
        self._model.set_weights(weights)

    def activate(self, inputs: np.ndarray) -> np.ndarray:
        tf = self._tf
        x = np.asarray(inputs, dtype=np.float32)
        single = x.ndim == 1
        x = np.atleast_2d(x)

        predictions = self._model(tf.convert_to_tensor(x), training=False).numpy()
        predictions = predictions.astype(np.float64)
        return predictions[0] if single else predictions

    def fit(self, features: np.ndarray, labels: np.ndarray):
        tf = self._tf
        x = tf.convert_to_tensor(np.atleast_2d(features), dtype=tf.float32)
        y = tf.convert_to_tensor(
            np.asarray(labels).reshape(-1, self.n_out), dtype=tf.float32
        )

        for _ in range(self.num_iterations):
            with tf.GradientTape() as tape:
                predictions = self._model(x, training=True)
                loss = self._loss_fn(y, predictions)
            gradients = tape.gradient(loss, self._model.trainable_variables)
            self._optimizer.apply_gradients(zip(gradients, self._model.trainable_variables))


class KerasLayerFactory(LayerFactory):
    """Factory producing KerasLayer instances."""

    def create(self, conf: Any) -> KerasLayer:
        return KerasLayer(conf)

    def num_params(self, conf: Any) -> int:
        return conf.n_in * conf.n_out + conf.n_out

    def __repr__(self) -> str:
        return "KerasLayerFactory()"
