"""Prometheus metrics for the gateway and its TensorBoard sessions."""

import time
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .logging import get_logger

logger = get_logger("monitoring")


class GatewayMetrics:
    """Gateway metrics collection and exposure.

    Each instance owns its registry so several apps can live in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests_total = Counter(
            "trialgate_requests_total",
            "Total number of handled REST requests",
            ["method", "route", "status"],
            registry=self.registry,
        )

        self.active_sessions = Gauge(
            "trialgate_tensorboard_sessions",
            "Number of live TensorBoard sessions",
            registry=self.registry,
        )

        self.spawn_failures = Counter(
            "trialgate_tensorboard_spawn_failures_total",
            "Total number of TensorBoard processes that failed to start",
            registry=self.registry,
        )

        self.termination_failures = Counter(
            "trialgate_tensorboard_termination_failures_total",
            "Total number of TensorBoard processes that failed to terminate",
            registry=self.registry,
        )

        self.spawn_duration = Histogram(
            "trialgate_tensorboard_spawn_duration_seconds",
            "Time taken for a TensorBoard process to become ready",
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )

        logger.debug("Gateway metrics initialized")

    def record_request(self, method: str, route: str, status: int) -> None:
        self.requests_total.labels(method=method, route=route, status=str(status)).inc()

    def set_active_sessions(self, count: int) -> None:
        self.active_sessions.set(count)

    def record_spawn_failure(self) -> None:
        self.spawn_failures.inc()

    def record_termination_failure(self) -> None:
        self.termination_failures.inc()

    def time_spawn(self) -> "StepTimer":
        """Context manager for timing TensorBoard startup."""
        return StepTimer(self.spawn_duration)

    def exposition(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


class StepTimer:
    """Context manager for timing operations."""

    def __init__(self, histogram):
        self.histogram = histogram
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None and exc_type is None:
            duration = time.time() - self.start_time
            self.histogram.observe(duration)
