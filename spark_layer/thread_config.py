"""Thread configuration for BLAS, OpenMP and TensorFlow on executors.

Several LocalTrainer tasks usually share one executor host, so each Python
worker process caps its math-library threads before training starts.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class ThreadConfig:
    """Configuration for MKL, OpenMP and TensorFlow threading."""

    mkl_num_threads: int = 1
    openmp_num_threads: int = 1
    tf_intra_op_parallelism: int = 1
    tf_inter_op_parallelism: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mkl_num_threads": self.mkl_num_threads,
            "openmp_num_threads": self.openmp_num_threads,
            "tf_intra_op_parallelism": self.tf_intra_op_parallelism,
            "tf_inter_op_parallelism": self.tf_inter_op_parallelism,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadConfig":
        return cls(**data)


def configure_threads(config: ThreadConfig):
    """
    Export thread-count environment variables for math libraries.

    Only takes full effect when called before numpy's BLAS backend or
    TensorFlow initialise their thread pools, which is the case in a fresh
    Spark Python worker.

    Args:
        config: ThreadConfig with thread counts
    """
    os.environ["MKL_NUM_THREADS"] = str(config.mkl_num_threads)
    os.environ["OMP_NUM_THREADS"] = str(config.openmp_num_threads)
    os.environ["OPENBLAS_NUM_THREADS"] = str(config.openmp_num_threads)
    os.environ["NUMEXPR_NUM_THREADS"] = str(config.openmp_num_threads)

    os.environ["TF_NUM_INTEROP_THREADS"] = str(config.tf_inter_op_parallelism)
    os.environ["TF_NUM_INTRAOP_THREADS"] = str(config.tf_intra_op_parallelism)
    os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")


def get_optimal_thread_config(
    num_cores: int,
    num_workers_per_node: int
) -> ThreadConfig:
    """
    Split the cores of one node among its concurrent worker processes.

    Args:
        num_cores: Total number of CPU cores available
        num_workers_per_node: Number of worker processes per node

    Returns:
        ThreadConfig for one worker process
    """
    # ~10% of cores stay with the OS and the Spark executor JVM
    usable_cores = max(1, int(num_cores * 0.9))
    cores_per_worker = max(1, usable_cores // max(1, num_workers_per_node))

    tf_intra = max(1, int(cores_per_worker * 0.75))
    tf_inter = max(1, cores_per_worker - tf_intra)

    return ThreadConfig(
        mkl_num_threads=cores_per_worker,
        openmp_num_threads=cores_per_worker,
        tf_intra_op_parallelism=tf_intra,
        tf_inter_op_parallelism=tf_inter,
    )
