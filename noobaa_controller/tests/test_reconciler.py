from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

import pytest
from kubernetes.client import ApiException
from prometheus_client import CollectorRegistry
from urllib3.exceptions import MaxRetryError, ProtocolError

from noobaa_controller.src.errors import EventPublishError, ReconcileError, StatusPatchError
from noobaa_controller.src.metrics import ControllerMetrics
from noobaa_controller.src.reconciler import Action, Context, error_policy, reconcile
from noobaa_controller.src.resource import NooBaaSource
from noobaa_controller.src.state import ControllerState, Reporter

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class FakeCustomObjectsApi:
    def __init__(
        self, fail_status: int | None = None, error: Exception | None = None
    ) -> None:
        self.fail_status = fail_status
        self.error = error
        self.patches: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def patch_namespaced_custom_object_status(self, **kwargs: Any) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        if self.fail_status is not None:
            raise ApiException(status=self.fail_status, reason="boom")
        with self._lock:
            self.patches.append(kwargs)
        return kwargs["body"]


class FakeEventsApi:
    def __init__(
        self, fail_status: int | None = None, error: Exception | None = None
    ) -> None:
        self.fail_status = fail_status
        self.error = error
        self.events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def create_namespaced_event(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.error is not None:
            raise self.error
        if self.fail_status is not None:
            raise ApiException(status=self.fail_status, reason="events unavailable")
        with self._lock:
            self.events.append({"namespace": namespace, **body})
        return body


def make_source(
    logical_name: str = "good-source-1",
    name: str = "demo",
    namespace: str = "default",
) -> NooBaaSource:
    return NooBaaSource.from_dict(
        {
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
            "spec": {
                "name": logical_name,
                "source": {
                    "rpcUrl": "https://noobaa-mgmt:443",
                    "rpcSecret": "noobaa-admin",
                    "bucket": "first.bucket",
                },
                "sink": {"uri": "http://event-display.default.svc"},
            },
        }
    )


def make_context(
    custom_api: Any = None,
    events_api: Any = None,
    state: ControllerState | None = None,
    **overrides: Any,
) -> Context:
    return Context(
        custom_api=custom_api or FakeCustomObjectsApi(),
        events_api=events_api or FakeEventsApi(),
        state=state
        or ControllerState(
            reporter=Reporter("noobaa-source-controller", "pod-0"), last_event=T0
        ),
        metrics=ControllerMetrics.create(CollectorRegistry()),
        **overrides,
    )


# ---------------------------------------------------------------------------
# Status and events
# ---------------------------------------------------------------------------


def test_good_source_applies_status_without_event() -> None:
    ctx = make_context()

    action = reconcile(make_source("good-source-1"), ctx)

    assert action == Action.requeue(1800)
    assert len(ctx.custom_api.patches) == 1
    patch_call = ctx.custom_api.patches[0]
    assert patch_call["body"] == {
        "apiVersion": "knative.dev/v1",
        "kind": "NooBaaSource",
        "status": {"is_bad": False},
    }
    assert patch_call["name"] == "demo"
    assert patch_call["namespace"] == "default"
    assert patch_call["plural"] == "noobaasources"
    assert ctx.events_api.events == []


def test_status_apply_uses_forced_field_manager() -> None:
    ctx = make_context()

    reconcile(make_source(), ctx)

    patch_call = ctx.custom_api.patches[0]
    assert patch_call["field_manager"] == "cntrlr"
    assert patch_call["force"] is True
    assert patch_call["_content_type"] == "application/apply-patch+yaml"


@pytest.mark.parametrize("logical_name", ["bad-source-1", "badger"])
def test_bad_source_publishes_exactly_one_event(logical_name: str) -> None:
    ctx = make_context()

    action = reconcile(make_source(logical_name), ctx)

    assert action.requeue_after == 1800
    assert ctx.custom_api.patches[0]["body"]["status"] == {"is_bad": True}
    assert len(ctx.events_api.events) == 1
    event = ctx.events_api.events[0]
    assert event["namespace"] == "default"
    assert event["type"] == "Normal"
    assert event["reason"] == "BadNooBaaSource"
    assert event["action"] == "Correcting"
    assert event["note"] == "Sending `demo` to detention"
    assert event["reportingController"] == "noobaa-source-controller"
    assert event["reportingInstance"] == "pod-0"
    assert event["regarding"]["kind"] == "NooBaaSource"
    assert event["regarding"]["uid"] == "uid-demo"


def test_reconcile_is_idempotent() -> None:
    ctx = make_context()
    source = make_source("good-source-1")

    reconcile(source, ctx)
    reconcile(source, ctx)

    first, second = ctx.custom_api.patches
    assert first["body"] == second["body"]


# ---------------------------------------------------------------------------
# Shared state and metrics
# ---------------------------------------------------------------------------


def test_reconcile_records_last_event_and_metrics() -> None:
    later = T0 + timedelta(minutes=5)
    state = ControllerState(reporter=Reporter("r"), last_event=T0, clock=lambda: later)
    ticks = iter([10.0, 10.25])
    ctx = make_context(state=state, monotonic=lambda: next(ticks))

    reconcile(make_source(), ctx)

    assert state.snapshot().last_event == later
    assert ctx.metrics.handled_count() == 1
    assert ctx.metrics.registry.get_sample_value(
        "noobaa_source_controller_reconcile_duration_seconds_sum"
    ) == pytest.approx(0.25)


def test_state_is_recorded_even_when_status_apply_fails() -> None:
    later = T0 + timedelta(minutes=1)
    state = ControllerState(reporter=Reporter("r"), last_event=T0, clock=lambda: later)
    ctx = make_context(custom_api=FakeCustomObjectsApi(fail_status=500), state=state)

    with pytest.raises(StatusPatchError):
        reconcile(make_source(), ctx)

    assert state.snapshot().last_event == later
    assert ctx.metrics.handled_count() == 0


def test_concurrent_reconciles_do_not_lose_counter_updates() -> None:
    ctx = make_context()
    sources = [make_source(name=f"source-{i}") for i in range(64)]
    start = threading.Barrier(len(sources), timeout=10)
    failures: list[BaseException] = []

    def run(source: NooBaaSource) -> None:
        start.wait()
        try:
            reconcile(source, ctx)
        except BaseException as exc:  # noqa: BLE001
            failures.append(exc)

    threads = [threading.Thread(target=run, args=(source,)) for source in sources]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert failures == []
    assert ctx.metrics.handled_count() == len(sources)
    assert len(ctx.custom_api.patches) == len(sources)


def test_concurrent_reconciles_keep_latest_start_time() -> None:
    stamps = count()
    clock_lock = threading.Lock()

    def clock() -> datetime:
        with clock_lock:
            return T0 + timedelta(seconds=next(stamps))

    state = ControllerState(reporter=Reporter("r"), last_event=T0 - timedelta(days=1), clock=clock)
    ctx = make_context(state=state)
    sources = [make_source(name=f"source-{i}") for i in range(32)]

    threads = [threading.Thread(target=reconcile, args=(source, ctx)) for source in sources]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert state.snapshot().last_event == T0 + timedelta(seconds=len(sources) - 1)


# ---------------------------------------------------------------------------
# Failures and error policy
# ---------------------------------------------------------------------------


def test_status_apply_failure_raises_typed_error_with_cause() -> None:
    ctx = make_context(custom_api=FakeCustomObjectsApi(fail_status=409))

    with pytest.raises(StatusPatchError) as exc_info:
        reconcile(make_source("bad-source-1"), ctx)

    assert isinstance(exc_info.value.cause, ApiException)
    assert exc_info.value.cause.status == 409
    assert exc_info.value.__cause__ is exc_info.value.cause
    assert ctx.events_api.events == []


def test_event_publish_failure_raises_typed_error() -> None:
    ctx = make_context(events_api=FakeEventsApi(fail_status=503))

    with pytest.raises(EventPublishError) as exc_info:
        reconcile(make_source("bad-source-1"), ctx)

    assert isinstance(exc_info.value, ReconcileError)
    assert exc_info.value.cause.status == 503
    assert len(ctx.custom_api.patches) == 1


def test_status_apply_transport_failure_raises_typed_error() -> None:
    transport_error = MaxRetryError(None, "/apis/knative.dev/v1", reason="connection refused")
    ctx = make_context(custom_api=FakeCustomObjectsApi(error=transport_error))

    with pytest.raises(StatusPatchError) as exc_info:
        reconcile(make_source("bad-source-1"), ctx)

    assert exc_info.value.cause is transport_error
    assert exc_info.value.__cause__ is transport_error
    assert ctx.events_api.events == []


def test_event_publish_transport_failure_raises_typed_error() -> None:
    transport_error = ProtocolError("connection reset")
    ctx = make_context(events_api=FakeEventsApi(error=transport_error))

    with pytest.raises(EventPublishError) as exc_info:
        reconcile(make_source("bad-source-1"), ctx)

    assert exc_info.value.cause is transport_error
    assert exc_info.value.__cause__ is transport_error
    assert len(ctx.custom_api.patches) == 1


@pytest.mark.parametrize(
    "error",
    [
        StatusPatchError("patch failed"),
        EventPublishError("event failed"),
        RuntimeError("anything else"),
    ],
)
def test_error_policy_always_requeues_after_fixed_delay(error: Exception) -> None:
    ctx = make_context()

    action = error_policy(error, make_source(), ctx)

    assert action == Action.requeue(360)
    assert ctx.metrics.registry.get_sample_value(
        "noobaa_source_controller_reconcile_errors_total"
    ) == 1


def test_requeue_intervals_follow_context() -> None:
    ctx = make_context(success_requeue_seconds=60.0, error_requeue_seconds=5.0)

    assert reconcile(make_source(), ctx) == Action.requeue(60)
    assert error_policy(RuntimeError("x"), make_source(), ctx) == Action.requeue(5)


def test_action_helpers() -> None:
    assert Action.await_change().requeue_after is None
    assert Action.requeue(1).requeue_after == 1.0
    with pytest.raises(ValueError):
        Action.requeue(-1)
