"""Utility modules for spark_layer."""

from spark_layer.utils.logging import LayerLogger, MetricsLogger, get_logger

__all__ = ["LayerLogger", "MetricsLogger", "get_logger"]
