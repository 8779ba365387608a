"""Tests for SparkLayerTrainer running without a SparkContext."""

import os
import shutil
import tempfile
import unittest
from unittest import mock

import numpy as np
from pyspark.mllib.linalg import Matrices, Matrix, Vector, Vectors
from pyspark.mllib.regression import LabeledPoint

from spark_layer.config import LayerConfiguration, TrainerConfig
from spark_layer.errors import EmptyDataset, InvalidConfiguration, NotFitted, ParameterSizeMismatch
from spark_layer.layers import DenseLayer
from spark_layer.minibatch import Example, MiniBatchPartitioner
from spark_layer.trainer import SparkLayerTrainer, TrainerState
from spark_layer.worker import train_mini_batch


def quiet_config(**kwargs):
    return TrainerConfig(verbose=False, **kwargs)


def make_examples(n, n_in=1, n_out=1, seed=0):
    rng = np.random.default_rng(seed)
    return [
        Example(features=rng.normal(size=n_in), label=rng.integers(0, 2, size=n_out))
        for _ in range(n)
    ]


class _WrongSizeFactory:
    """Declares more parameters than the layers it builds."""

    def create(self, conf):
        return DenseLayer(conf.n_in, conf.n_out, seed=conf.seed)

    def num_params(self, conf):
        return conf.n_in * conf.n_out + conf.n_out + 3


class _GrowingFactory:
    """Builds a correctly sized layer once, then oversized ones."""

    def __init__(self):
        self.calls = 0

    def create(self, conf):
        self.calls += 1
        n_out = conf.n_out if self.calls == 1 else conf.n_out + 1
        return DenseLayer(conf.n_in, n_out, seed=conf.seed)

    def num_params(self, conf):
        return conf.n_in * conf.n_out + conf.n_out


class TestSparkLayerTrainer(unittest.TestCase):
    """Tests for the local (thread pool) training round."""

    def test_identity_training_round(self):
        """With no gradient steps the averaged parameters equal the initial ones."""
        conf = LayerConfiguration(n_in=1, n_out=1, batch_size=2, num_iterations=0)
        initial = conf.create_layer().params()

        trainer = SparkLayerTrainer(None, conf, quiet_config())
        layer = trainer.fit_dataset(make_examples(4))

        np.testing.assert_array_equal(layer.params(), initial)
        self.assertEqual(len(initial), 2)

        history = trainer.get_training_history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["num_mini_batches"], 2)
        self.assertEqual(history[0]["num_params"], 2)
        self.assertFalse(history[0]["distributed"])

    def test_average_of_mini_batch_results(self):
        """The result is the unweighted mean over mini-batches, short batch included."""
        conf = LayerConfiguration(
            n_in=3, n_out=2, batch_size=2, num_iterations=3, learning_rate=0.5,
        )
        examples = make_examples(5, n_in=3, n_out=2, seed=4)

        trainer = SparkLayerTrainer(None, conf, quiet_config(num_workers=3))
        layer = trainer.fit_dataset(examples)

        initial = conf.create_layer().params()
        batches = MiniBatchPartitioner(batch_size=2).partition(examples)
        self.assertEqual([len(b) for b in batches], [2, 2, 1])

        results = [train_mini_batch(conf.to_json(), initial, b) for b in batches]
        np.testing.assert_allclose(layer.params(), np.mean(results, axis=0), rtol=1e-12)

    def test_empty_dataset(self):
        """No examples: EmptyDataset and nothing is averaged."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(), quiet_config())

        with mock.patch.object(trainer._averager, "reduce") as reduce_mock:
            with self.assertRaises(EmptyDataset):
                trainer.fit_dataset([])

        reduce_mock.assert_not_called()
        self.assertEqual(trainer.state, TrainerState.CONFIGURED)

    def test_factory_size_mismatch_at_construction(self):
        """A factory whose layers disagree with its declared count is refused."""
        conf = LayerConfiguration(n_in=2, n_out=1, layer_factory=_WrongSizeFactory())

        with self.assertRaises(ParameterSizeMismatch):
            SparkLayerTrainer(None, conf, quiet_config())

    def test_size_mismatch_before_dispatch(self):
        """A bad canonical layer fails the round before any task runs."""
        conf = LayerConfiguration(n_in=2, n_out=1, layer_factory=_GrowingFactory())
        trainer = SparkLayerTrainer(None, conf, quiet_config())

        with mock.patch("spark_layer.trainer.LocalTrainer") as trainer_mock:
            with self.assertRaises(ParameterSizeMismatch):
                trainer.fit_dataset(make_examples(4, n_in=2))

        trainer_mock.assert_not_called()
        with self.assertRaises(NotFitted):
            trainer.get_layer()

    def test_state_transitions(self):
        """Test trainer state through a successful fit."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(batch_size=2), quiet_config())
        self.assertEqual(trainer.state, TrainerState.CONFIGURED)

        trainer.fit_dataset(make_examples(3))

        self.assertEqual(trainer.state, TrainerState.FITTED)

    def test_failed_fit_keeps_previous_layer(self):
        """A failing round leaves the last trained layer in place."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(batch_size=2), quiet_config())
        layer = trainer.fit_dataset(make_examples(3))
        params = layer.params()

        with self.assertRaises(EmptyDataset):
            trainer.fit_dataset([])

        self.assertEqual(trainer.state, TrainerState.FITTED)
        self.assertIs(trainer.get_layer(), layer)
        np.testing.assert_array_equal(trainer.get_layer().params(), params)
        self.assertEqual(len(trainer.get_training_history()), 1)

    def test_configuration_is_cloned(self):
        """Caller changes after construction are not seen by the trainer."""
        conf = LayerConfiguration(batch_size=2)
        trainer = SparkLayerTrainer(None, conf, quiet_config())

        conf.batch_size = 100

        trainer.fit_dataset(make_examples(6))
        self.assertEqual(trainer.conf.batch_size, 2)
        self.assertEqual(trainer.get_training_history()[0]["num_mini_batches"], 3)

    def test_metrics_recorded(self):
        """Each round records its mini-batch count."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(batch_size=2), quiet_config())

        trainer.fit_dataset(make_examples(4))
        trainer.fit_dataset(make_examples(5))

        stats = trainer.metrics.get_stats("mini_batches")
        self.assertEqual(stats["count"], 2)
        self.assertEqual(stats["sum"], 5)

    def test_verbose_round_logs_metrics(self):
        """Verbose trainers log the running metrics after every round."""
        conf = LayerConfiguration(batch_size=2)
        verbose = SparkLayerTrainer(None, conf, TrainerConfig(verbose=True))
        quiet = SparkLayerTrainer(None, conf, quiet_config())

        with mock.patch.object(verbose.metrics, "log_stats") as verbose_log, \
                mock.patch.object(quiet.metrics, "log_stats") as quiet_log:
            verbose.fit_dataset(make_examples(4))
            verbose.fit_dataset(make_examples(4))
            quiet.fit_dataset(make_examples(4))

        self.assertEqual(verbose_log.call_count, 2)
        quiet_log.assert_not_called()

    def test_invalid_batch_size_at_construction(self):
        """Non-integer batch sizes fail before any fit."""
        for batch_size in ("2", 2.5, 0):
            with self.assertRaises(InvalidConfiguration):
                SparkLayerTrainer(None, LayerConfiguration(batch_size=batch_size), quiet_config())


class TestPredict(unittest.TestCase):
    """Tests for prediction."""

    def setUp(self):
        self.trainer = SparkLayerTrainer(
            None,
            LayerConfiguration(n_in=2, n_out=3, batch_size=2, activation="softmax",
                               loss_function="mcxent"),
            quiet_config(),
        )

    def test_predict_before_fit(self):
        """Test prediction without a trained layer."""
        with self.assertRaises(NotFitted):
            self.trainer.predict(np.zeros(2))

    def test_predict_numpy(self):
        """Vector in, vector out; matrix in, matrix out."""
        layer = self.trainer.fit_dataset(make_examples(4, n_in=2, n_out=3))

        single = self.trainer.predict(np.array([0.5, -0.5]))
        many = self.trainer.predict(np.array([[0.5, -0.5], [1.0, 2.0]]))

        self.assertEqual(single.shape, (3,))
        self.assertEqual(many.shape, (2, 3))
        np.testing.assert_allclose(single, layer.activate(np.array([0.5, -0.5])))
        np.testing.assert_allclose(many[0], single)

    def test_predict_mllib(self):
        """MLlib inputs produce MLlib outputs."""
        self.trainer.fit_dataset(make_examples(4, n_in=2, n_out=3))
        rows = np.array([[0.5, -0.5], [1.0, 2.0]])

        vector = self.trainer.predict(Vectors.dense([0.5, -0.5]))
        matrix = self.trainer.predict(Matrices.dense(2, 2, rows.ravel(order="F").tolist()))

        self.assertIsInstance(vector, Vector)
        self.assertIsInstance(matrix, Matrix)
        self.assertEqual((matrix.numRows, matrix.numCols), (2, 3))
        np.testing.assert_allclose(matrix.toArray(), self.trainer.predict(rows))
        np.testing.assert_allclose(vector.toArray(), self.trainer.predict(rows[0]))

    def test_predict_wrong_width(self):
        """Inputs must have n_in columns."""
        self.trainer.fit_dataset(make_examples(4, n_in=2, n_out=3))

        with self.assertRaises(ValueError):
            self.trainer.predict(np.zeros(5))


class TestFitSources(unittest.TestCase):
    """Tests for fitting from text files and LabeledPoints."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_fit_from_path(self):
        """A CSV path is read, vectorized and trained on."""
        path = os.path.join(self.temp_dir, "train.csv")
        with open(path, "w") as f:
            f.write("0.1,0.9,1\n0.8,0.2,0\n0.4,0.6,1\n")

        conf = LayerConfiguration(n_in=2, n_out=2, batch_size=2, activation="softmax",
                                  loss_function="mcxent")
        trainer = SparkLayerTrainer(None, conf, quiet_config())
        layer = trainer.fit(path, label_index=2)

        self.assertEqual(layer.num_params(), 6)
        self.assertEqual(trainer.get_training_history()[0]["num_mini_batches"], 2)

    def test_fit_from_path_requires_label_index(self):
        """Test missing label_index for a path."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(), quiet_config())

        with self.assertRaises(ValueError):
            trainer.fit(os.path.join(self.temp_dir, "missing.csv"))

    def test_fit_examples(self):
        """Already vectorized examples are trained on as they are."""
        examples = [Example(features=[float(i)], label=[i % 2]) for i in range(4)]
        conf = LayerConfiguration(n_in=1, n_out=1, batch_size=2, num_iterations=0)

        trainer = SparkLayerTrainer(None, conf, quiet_config())
        with mock.patch("spark_layer.trainer.from_labeled_points") as convert_mock:
            layer = trainer.fit(examples)

        convert_mock.assert_not_called()
        np.testing.assert_array_equal(layer.params(), conf.create_layer().params())
        self.assertEqual(trainer.get_training_history()[0]["num_mini_batches"], 2)

    def test_fit_example_iterator(self):
        """A one-shot iterator of examples is consumed exactly once."""
        conf = LayerConfiguration(n_in=2, n_out=1, batch_size=2)
        trainer = SparkLayerTrainer(None, conf, quiet_config())

        trainer.fit(iter(make_examples(5, n_in=2)))

        self.assertEqual(trainer.get_training_history()[0]["num_mini_batches"], 3)

    def test_fit_empty_collection(self):
        """An empty collection is neither examples nor points; nothing to train."""
        trainer = SparkLayerTrainer(None, LayerConfiguration(), quiet_config())

        with self.assertRaises(EmptyDataset):
            trainer.fit([])

    def test_fit_labeled_points(self):
        """LabeledPoints go through the same round."""
        points = [LabeledPoint(i % 2, Vectors.dense([i, -i])) for i in range(5)]
        conf = LayerConfiguration(n_in=2, n_out=1, batch_size=2)

        trainer = SparkLayerTrainer(None, conf, quiet_config())
        trainer.fit(points)
        trainer.fit_labeled_points(points)

        history = trainer.get_training_history()
        self.assertEqual([h["num_mini_batches"] for h in history], [3, 3])

    def test_static_train(self):
        """train() builds a trainer and fits in one call."""
        points = [LabeledPoint(1.0, Vectors.dense([0.2, 0.4])) for _ in range(4)]
        conf = LayerConfiguration(n_in=2, n_out=1, batch_size=2, num_iterations=0)

        layer = SparkLayerTrainer.train(points, conf, quiet_config())

        np.testing.assert_array_equal(layer.params(), conf.create_layer().params())


if __name__ == "__main__":
    unittest.main()
