# ABOUTME: Prometheus metrics for webhook calls and Argo CD sync sessions
# ABOUTME: Private CollectorRegistry per recorder, rendered by the /metrics route

"""
Prometheus instrumentation.

Exposed series:

    image_updater_http_hooks_received_total{code}   webhook calls by status code
    image_updater_http_hooks_inflight               webhook calls being handled
    image_updater_http_hooks_duration_seconds       webhook handling time
    image_updater_argocd_syncs_total{result}        sync sessions by outcome

Each MetricsRecorder owns its registry, so building several apps in one
process (tests) never trips over duplicate metric names.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

NAMESPACE = "image_updater"


class HookTracker:
    """Handle given to the webhook route; carries the final status code."""

    def __init__(self) -> None:
        self.code = 500


class MetricsRecorder:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.hooks_received = Counter(
            "hooks_received",
            "Number of webhook calls received, by response code",
            ["code"],
            namespace=NAMESPACE,
            subsystem="http",
            registry=self.registry,
        )
        self.hooks_inflight = Gauge(
            "hooks_inflight",
            "Number of webhook calls currently being handled",
            namespace=NAMESPACE,
            subsystem="http",
            registry=self.registry,
        )
        self.hooks_duration = Histogram(
            "hooks_duration_seconds",
            "Time spent handling webhook calls",
            namespace=NAMESPACE,
            subsystem="http",
            buckets=(0.1, 0.5, 1, 2.5, 5, 10, 20, 30, 60),
            registry=self.registry,
        )
        self.syncs = Counter(
            "syncs",
            "Number of finished Argo CD sync sessions, by result",
            ["result"],
            namespace=NAMESPACE,
            subsystem="argocd",
            registry=self.registry,
        )

    @contextmanager
    def track_hook(self) -> Iterator[HookTracker]:
        """
        Count one webhook call.

        Set `tracker.code` to the response status; an exception escaping the
        block counts as 500.
        """
        tracker = HookTracker()
        start = time.perf_counter()
        self.hooks_inflight.inc()
        try:
            yield tracker
        finally:
            self.hooks_inflight.dec()
            self.hooks_duration.observe(time.perf_counter() - start)
            self.hooks_received.labels(code=str(tracker.code)).inc()

    def record_sync(self, result: str) -> None:
        self.syncs.labels(result=result).inc()

    def render(self) -> tuple[bytes, str]:
        """Exposition body and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
