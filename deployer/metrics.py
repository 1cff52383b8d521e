"""Prometheus metrics owned by a single service instance."""
from __future__ import annotations

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class DeployerMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.deployments_total = Counter(
            "deployer_deployments_total",
            "Total number of deployments",
            ["status"],
            registry=self.registry,
        )
        self.recovery_total = Counter(
            "deployer_recovery_total",
            "Total number of program recoveries",
            ["status"],
            registry=self.registry,
        )
        self.deployment_duration = Histogram(
            "deployer_deployment_duration_seconds",
            "Duration of deployment operations",
            registry=self.registry,
        )
        self.rpc_errors = Counter(
            "deployer_solana_rpc_errors_total",
            "Total number of Solana RPC errors",
            registry=self.registry,
        )
        self.active_loans = Gauge(
            "deployer_active_loans",
            "Number of active loans being monitored",
            registry=self.registry,
        )
        self.events_dropped = Counter(
            "deployer_events_dropped_total",
            "Events dropped because the orchestrator queue was full",
            ["event"],
            registry=self.registry,
        )

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST


__all__ = ["DeployerMetrics"]
