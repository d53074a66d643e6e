from __future__ import annotations

from datetime import datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from prometheus_client import CollectorRegistry

from noobaa_controller.src.config import ControllerConfig
from noobaa_controller.src.controller import NooBaaSourceController
from noobaa_controller.src.errors import CrdNotInstalledError
from noobaa_controller.src.manager import CRD_INSTALL_HINT, Manager, build_manager_from_env


class FakeCustomObjectsApi:
    def __init__(self, fail_status: int | None = None) -> None:
        self.fail_status = fail_status
        self.list_calls: list[tuple[str, dict[str, Any]]] = []

    def _list(self, scope: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        self.list_calls.append((scope, kwargs))
        if self.fail_status is not None:
            raise ApiException(status=self.fail_status, reason="NotFound")
        return {"metadata": {"resourceVersion": "1"}, "items": []}

    def list_cluster_custom_object(self, **kwargs: Any) -> dict[str, Any]:
        return self._list("cluster", kwargs)

    def list_namespaced_custom_object(self, **kwargs: Any) -> dict[str, Any]:
        return self._list("namespaced", kwargs)


def test_create_checks_crd_with_single_item_list() -> None:
    custom_api = FakeCustomObjectsApi()

    manager, controller = Manager.create(
        custom_api=custom_api,
        events_api=MagicMock(),
        config=ControllerConfig(),
        registry=CollectorRegistry(),
    )

    assert isinstance(controller, NooBaaSourceController)
    assert custom_api.list_calls == [
        (
            "cluster",
            {"group": "knative.dev", "version": "v1", "plural": "noobaasources", "limit": 1},
        )
    ]
    assert manager.ready is controller.ready


def test_create_respects_namespace_scope() -> None:
    custom_api = FakeCustomObjectsApi()

    _, controller = Manager.create(
        custom_api=custom_api,
        events_api=MagicMock(),
        config=ControllerConfig(namespace="noobaa"),
        registry=CollectorRegistry(),
    )

    scope, kwargs = custom_api.list_calls[0]
    assert scope == "namespaced"
    assert kwargs["namespace"] == "noobaa"
    assert controller.namespace == "noobaa"


def test_create_fails_before_any_watch_when_crd_missing() -> None:
    custom_api = FakeCustomObjectsApi(fail_status=404)

    with (
        patch("noobaa_controller.src.controller.watch.Watch") as watch_factory,
        pytest.raises(CrdNotInstalledError) as exc_info,
    ):
        Manager.create(
            custom_api=custom_api,
            events_api=MagicMock(),
            config=ControllerConfig(),
            registry=CollectorRegistry(),
        )

    assert str(exc_info.value) == CRD_INSTALL_HINT
    assert isinstance(exc_info.value.__cause__, ApiException)
    watch_factory.assert_not_called()


def test_create_wires_config_into_context() -> None:
    config = ControllerConfig(
        reporter_name="custom-reporter",
        reporter_instance="pod-7",
        field_manager="other-manager",
        success_requeue_seconds=600,
        error_requeue_seconds=30,
        watch_timeout_seconds=45,
    )

    manager, controller = Manager.create(
        custom_api=FakeCustomObjectsApi(),
        events_api=MagicMock(),
        config=config,
        registry=CollectorRegistry(),
    )

    ctx = controller.context
    assert ctx.field_manager == "other-manager"
    assert ctx.success_requeue_seconds == 600.0
    assert ctx.error_requeue_seconds == 30.0
    assert ctx.state.reporter.controller == "custom-reporter"
    assert ctx.state.reporter.instance == "pod-7"
    assert controller.watch_timeout_seconds == 45
    assert manager.state().reporter.controller == "custom-reporter"


def test_state_accessor_returns_snapshot() -> None:
    manager, controller = Manager.create(
        custom_api=FakeCustomObjectsApi(),
        events_api=MagicMock(),
        config=ControllerConfig(),
        registry=CollectorRegistry(),
    )
    recorded = controller.context.state.record_event()

    snapshot = manager.state()

    assert snapshot.last_event == recorded
    assert isinstance(snapshot.to_dict()["last_event"], str)
    assert snapshot.to_dict()["reporter"] == "noobaa-source-controller"
    assert isinstance(snapshot.last_event, datetime)


def test_metrics_accessor_scrapes_registry() -> None:
    manager, controller = Manager.create(
        custom_api=FakeCustomObjectsApi(),
        events_api=MagicMock(),
        config=ControllerConfig(),
        registry=CollectorRegistry(),
    )
    controller.context.metrics.observe_reconcile(0.3)

    families = {family.name: family for family in manager.metrics()}

    assert "noobaa_source_controller_handled_events" in families
    assert "noobaa_source_controller_reconcile_duration_seconds" in families
    handled = families["noobaa_source_controller_handled_events"]
    totals = [s.value for s in handled.samples if s.name.endswith("_total")]
    assert totals == [1.0]


def test_build_manager_from_env_loads_kube_configuration() -> None:
    custom_api = FakeCustomObjectsApi()

    with (
        patch("noobaa_controller.src.manager.kube.load_kube_configuration") as load_config,
        patch(
            "noobaa_controller.src.manager.kube.build_clients",
            return_value=(custom_api, MagicMock()),
        ),
    ):
        manager, _ = build_manager_from_env(ControllerConfig(), registry=CollectorRegistry())

    load_config.assert_called_once()
    assert custom_api.list_calls
    assert manager.state().reporter.controller == "noobaa-source-controller"
