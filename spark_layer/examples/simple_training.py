"""
Simple training example for spark_layer.

This example demonstrates:
1. Building a layer configuration
2. Vectorizing data from a pandas DataFrame
3. Repeated averaging rounds over mini-batches
4. Predicting with the trained layer

Run this example (local thread pool):
    python -m spark_layer.examples.simple_training

Or on a local Spark master:
    python -m spark_layer.examples.simple_training --spark
"""

import os
import sys

import numpy as np
import pandas as pd

from spark_layer import LayerConfiguration, SparkLayerTrainer, TrainerConfig
from spark_layer.sources import from_pandas
from spark_layer.thread_config import get_optimal_thread_config


def make_blobs(num_samples: int = 600, seed: int = 7) -> pd.DataFrame:
    """Three Gaussian clusters in 2-D, labelled 0, 1, 2."""
    rng = np.random.default_rng(seed)
    centers = np.array([[-2.0, 0.0], [2.0, 0.0], [0.0, 2.5]])

    labels = rng.integers(0, len(centers), size=num_samples)
    points = centers[labels] + rng.normal(0.0, 0.6, size=(num_samples, 2))

    return pd.DataFrame({"x": points[:, 0], "y": points[:, 1], "label": labels})


def main():
    """Main training function."""
    use_spark = "--spark" in sys.argv[1:]

    print("=" * 60)
    print("spark_layer - Simple Training Example")
    print("=" * 60)

    conf = LayerConfiguration(
        n_in=2,
        n_out=3,
        batch_size=50,
        activation="softmax",
        loss_function="mcxent",
        learning_rate=0.5,
        num_iterations=20,
        seed=42,
    )
    print("\nConfiguration:")
    print(f"  - Layer: {conf.n_in} -> {conf.n_out} ({conf.activation})")
    print(f"  - Mini-batch size: {conf.batch_size}")
    print(f"  - Parameters: {conf.num_params()}")

    spark_context = None
    if use_spark:
        from pyspark import SparkContext
        spark_context = SparkContext("local[2]", "spark_layer_example")

    try:
        data = make_blobs()
        examples = from_pandas(data, "label", conf.n_out, spark_context=spark_context, num_slices=2)

        # Two local executor slots share this machine's cores
        trainer_config = TrainerConfig(
            thread_config=get_optimal_thread_config(os.cpu_count() or 1, num_workers_per_node=2),
            num_workers=4,
            verbose=False,
        )

        features = data[["x", "y"]].to_numpy()
        labels = data["label"].to_numpy()

        print("\n[1] Training...")
        for round_id in range(5):
            trainer = SparkLayerTrainer(
                spark_context,
                conf,
                trainer_config,
            )
            layer = trainer.fit_dataset(examples)

            # Next round starts from the averaged parameters
            conf.layer_factory = _WarmStartFactory(layer.params())

            accuracy = np.mean(np.argmax(trainer.predict(features), axis=1) == labels)
            print(f"    Round {round_id + 1}: accuracy={accuracy:.3f}")

        print("\n[2] Predicting a single point...")
        print(f"    (0.0, 2.5) -> {np.round(trainer.predict(np.array([0.0, 2.5])), 3)}")

        print("\n[3] Training history:")
        for entry in trainer.get_training_history():
            print(f"    {entry}")
    finally:
        if spark_context is not None:
            spark_context.stop()

    print("\nDone.")


class _WarmStartFactory:
    """Builds dense layers initialised from a previous round's parameters."""

    def __init__(self, params: np.ndarray):
        self.params = np.array(params)

    def create(self, conf):
        from spark_layer.layers import DenseLayerFactory

        layer = DenseLayerFactory().create(conf)
        layer.set_parameters(self.params)
        return layer

    def num_params(self, conf):
        return conf.n_in * conf.n_out + conf.n_out


if __name__ == "__main__":
    main()
