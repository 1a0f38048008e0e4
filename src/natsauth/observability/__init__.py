"""Observability for natsauth."""

from .metrics import ReconcileMetrics

__all__ = ["ReconcileMetrics"]
