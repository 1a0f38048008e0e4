"""
Prometheus Metrics Integration.

Provides metrics collection for the reconciliation engine.
"""

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class ReconcileMetrics:
    """
    Prometheus metrics collector for natsauth.

    Exposes metrics:
    - natsauth_reconcile_total{kind="...", result="success|requeue|error"}
    - natsauth_reconcile_duration_seconds{kind="..."}
    - natsauth_credentials_issued_total{kind="operator|account|user"}
    - natsauth_config_renders_total{mode="token|jwt|mixed"}

    Pass a dedicated ``CollectorRegistry`` when more than one engine lives in
    the same process (tests do).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector."""
        registry = registry if registry is not None else REGISTRY

        self.reconcile_total = Counter(
            "natsauth_reconcile_total",
            "Total number of reconciliations",
            ["kind", "result"],
            registry=registry,
        )

        self.reconcile_duration = Histogram(
            "natsauth_reconcile_duration_seconds",
            "Reconciliation duration in seconds",
            ["kind"],
            registry=registry,
        )

        self.credentials_issued_total = Counter(
            "natsauth_credentials_issued_total",
            "Total number of signed tokens or flat credentials written",
            ["kind"],
            registry=registry,
        )

        self.config_renders_total = Counter(
            "natsauth_config_renders_total",
            "Total number of server configuration writes",
            ["mode"],
            registry=registry,
        )

    def record_reconcile(self, kind: str, result: str, duration: float):
        """Record a finished reconciliation."""
        self.reconcile_total.labels(kind=kind, result=result).inc()
        self.reconcile_duration.labels(kind=kind).observe(duration)

    def record_issued(self, kind: str):
        """Record a credential issuance."""
        self.credentials_issued_total.labels(kind=kind).inc()

    def record_render(self, mode: str):
        """Record an aggregate configuration write."""
        self.config_renders_total.labels(mode=mode).inc()
