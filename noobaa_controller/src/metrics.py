from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, Info

RECONCILE_DURATION_BUCKETS = (0.01, 0.1, 0.25, 0.5, 1, 5, 15, 60)


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Instances are built by :meth:`create` against an explicit registry and
    passed to the reconciler and controller loop, so tests can use a private
    :class:`CollectorRegistry` instead of the process-wide default.
    """

    registry: CollectorRegistry
    handled_events: Counter
    reconcile_duration: Histogram
    reconcile_errors: Counter
    watch_errors: Counter
    watch_reconnects: Counter
    build_info: Info

    @classmethod
    def create(cls, registry: CollectorRegistry | None = None) -> ControllerMetrics:
        target = registry if registry is not None else REGISTRY
        return cls(
            registry=target,
            handled_events=Counter(
                "noobaa_source_controller_handled_events",
                "handled events",
                registry=target,
            ),
            reconcile_duration=Histogram(
                "noobaa_source_controller_reconcile_duration_seconds",
                "The duration of reconcile to complete in seconds",
                buckets=RECONCILE_DURATION_BUCKETS,
                registry=target,
            ),
            reconcile_errors=Counter(
                "noobaa_source_controller_reconcile_errors",
                "Total reconciles routed through the error policy",
                registry=target,
            ),
            watch_errors=Counter(
                "noobaa_source_controller_watch_errors",
                "Total Kubernetes list/watch errors",
                registry=target,
            ),
            watch_reconnects=Counter(
                "noobaa_source_controller_watch_reconnects",
                "Total watch stream reconnects after the initial connection",
                registry=target,
            ),
            build_info=Info(
                "noobaa_source_controller",
                "Build information for the controller",
                registry=target,
            ),
        )

    def observe_reconcile(self, duration_seconds: float) -> None:
        """Record one completed reconcile."""
        self.reconcile_duration.observe(max(0.0, duration_seconds))
        self.handled_events.inc()

    def handled_count(self) -> float:
        value = self.registry.get_sample_value("noobaa_source_controller_handled_events_total")
        return value or 0.0
