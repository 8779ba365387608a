"""Logging for the driver and for mini-batch tasks on executors.

Every record carries host:pid and, when it is emitted inside a Spark task,
the stage and partition of that task, so executor logs collected by Spark
can be matched to the mini-batches that produced them.
"""

import logging
import os
import socket
import sys
import threading
from dataclasses import dataclass
from typing import Dict

from pyspark import TaskContext

_FORMAT = "%(asctime)s | %(origin)s | %(task)s | %(name)s | %(levelname)s | %(message)s"

_loggers: Dict[str, "LayerLogger"] = {}
_loggers_lock = threading.Lock()


class _SparkTaskFilter(logging.Filter):
    """Adds `origin` (host:pid) and `task` (Spark stage/partition or "driver")."""

    def __init__(self):
        super().__init__()
        try:
            self.hostname = socket.gethostname()
        except OSError:
            self.hostname = "unknown"

    def filter(self, record: logging.LogRecord) -> bool:
        record.origin = f"{self.hostname}:{os.getpid()}"

        task = TaskContext.get()
        if task is None:
            record.task = "driver"
        else:
            record.task = f"stage={task.stageId()} partition={task.partitionId()}"
        return True


class LayerLogger:
    """stdout logger of one spark_layer component ("trainer", "worker", ...)."""

    def __init__(self, name: str, level: int = logging.INFO):
        self.name = name
        self.logger = logging.getLogger(f"spark_layer.{name}")
        self.logger.setLevel(level)
        self.logger.propagate = False

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(_SparkTaskFilter())
        self.logger.handlers = [handler]

    def debug(self, msg: str, *args, **kwargs):
        self.logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self.logger.info(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self.logger.error(msg, *args, **kwargs)


def get_logger(name: str, level: int = logging.INFO) -> LayerLogger:
    """
    Return the process-wide logger for a component, creating it on first use.

    Args:
        name: Component name (e.g., "trainer", "worker", "averaging")
        level: Logging level, applied only when the logger is created

    Returns:
        LayerLogger instance
    """
    with _loggers_lock:
        if name not in _loggers:
            _loggers[name] = LayerLogger(name, level=level)
        return _loggers[name]


@dataclass
class _Summary:
    count: int = 0
    total: float = 0.0
    low: float = float("inf")
    high: float = float("-inf")

    def add(self, value: float):
        self.count += 1
        self.total += value
        self.low = min(self.low, value)
        self.high = max(self.high, value)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "sum": self.total,
            "mean": self.total / self.count,
            "min": self.low,
            "max": self.high,
        }


class MetricsLogger:
    """
    Running count/sum/min/max of per-round training metrics.

    The trainer records the elapsed seconds and the mini-batch count of
    every round, and logs the running summary after each round when
    verbose.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"metrics.{name}")
        self._summaries: Dict[str, _Summary] = {}
        self._lock = threading.Lock()

    def record(self, metric_name: str, value: float):
        with self._lock:
            self._summaries.setdefault(metric_name, _Summary()).add(value)

    def get_stats(self, metric_name: str) -> dict:
        """Summary of one metric, or {} if it was never recorded."""
        with self._lock:
            summary = self._summaries.get(metric_name)
            return summary.to_dict() if summary is not None else {}

    def get_all_stats(self) -> Dict[str, dict]:
        with self._lock:
            return {name: s.to_dict() for name, s in self._summaries.items()}

    def log_stats(self):
        """Log one line per metric at info level."""
        for name, s in sorted(self.get_all_stats().items()):
            self.logger.info(
                f"{name} over {s['count']} rounds: mean={s['mean']:.4f}, "
                f"min={s['min']:.4f}, max={s['max']:.4f}"
            )
