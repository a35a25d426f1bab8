"""Observability helpers for relay metrics."""

from threadline.observability.metrics import MetricsStore

__all__ = ["MetricsStore"]
