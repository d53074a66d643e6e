from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client import ApiException
from prometheus_client import REGISTRY, CollectorRegistry
from prometheus_client.metrics_core import Metric

from noobaa_controller.src import kube
from noobaa_controller.src.config import ControllerConfig
from noobaa_controller.src.controller import NooBaaSourceController
from noobaa_controller.src.errors import CrdNotInstalledError
from noobaa_controller.src.metrics import ControllerMetrics
from noobaa_controller.src.reconciler import Context
from noobaa_controller.src.state import ControllerState, Reporter, StateSnapshot

LOGGER = logging.getLogger(__name__)

CRD_INSTALL_HINT = (
    "is the crd installed? please run: "
    "python -m noobaa_controller.src.crdgen | kubectl apply -f -"
)


class Manager:
    """Read-only handle onto a running NooBaaSource controller.

    Built by :meth:`create`, which also returns the controller whose
    ``run_forever`` the caller must drive; it only returns on shutdown.
    """

    def __init__(
        self,
        state: ControllerState,
        metrics: ControllerMetrics,
        controller: NooBaaSourceController,
    ) -> None:
        self._state = state
        self._metrics = metrics
        self._controller = controller

    @classmethod
    def create(
        cls,
        custom_api: Any,
        events_api: Any,
        config: ControllerConfig,
        registry: CollectorRegistry | None = None,
    ) -> tuple[Manager, NooBaaSourceController]:
        """Bootstrap shared state and metrics, gate on the CRD, and wire the controller.

        Raises :class:`CrdNotInstalledError` when NooBaaSources cannot be
        listed; no watch has been opened at that point.
        """
        try:
            kube.list_sources(custom_api, config.namespace, limit=1)
        except ApiException as exc:
            LOGGER.error("NooBaaSource list failed (status=%s): %s", exc.status, CRD_INSTALL_HINT)
            raise CrdNotInstalledError(CRD_INSTALL_HINT) from exc

        metrics = ControllerMetrics.create(registry if registry is not None else REGISTRY)
        state = ControllerState(
            reporter=Reporter(controller=config.reporter_name, instance=config.reporter_instance)
        )

        context = Context(
            custom_api=custom_api,
            events_api=events_api,
            state=state,
            metrics=metrics,
            field_manager=config.field_manager,
            success_requeue_seconds=float(config.success_requeue_seconds),
            error_requeue_seconds=float(config.error_requeue_seconds),
        )
        controller = NooBaaSourceController(
            custom_api=custom_api,
            context=context,
            namespace=config.namespace,
            watch_timeout_seconds=config.watch_timeout_seconds,
        )
        LOGGER.info(
            "NooBaaSource controller ready to watch %s",
            config.namespace or "all namespaces",
        )
        return cls(state=state, metrics=metrics, controller=controller), controller

    @property
    def ready(self) -> threading.Event:
        return self._controller.ready

    @property
    def controller_metrics(self) -> ControllerMetrics:
        return self._metrics

    def state(self) -> StateSnapshot:
        """Return a consistent snapshot of the shared state."""
        return self._state.snapshot()

    def metrics(self) -> list[Metric]:
        """Scrape every metric family from the registry."""
        return list(self._metrics.registry.collect())


def build_manager_from_env(
    config: ControllerConfig,
    registry: CollectorRegistry | None = None,
) -> tuple[Manager, NooBaaSourceController]:
    """Load kube configuration, build API clients and create the manager."""
    kube.load_kube_configuration()
    custom_api, events_api = kube.build_clients()
    return Manager.create(
        custom_api=custom_api,
        events_api=events_api,
        config=config,
        registry=registry,
    )
