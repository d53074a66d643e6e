from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from noobaa_controller.src import kube
from noobaa_controller.src.errors import EventPublishError, StatusPatchError
from noobaa_controller.src.metrics import ControllerMetrics
from noobaa_controller.src.resource import (
    NooBaaSource,
    desired_status,
    object_reference,
    status_apply_body,
)
from noobaa_controller.src.state import ControllerState

LOGGER = logging.getLogger(__name__)

DEFAULT_FIELD_MANAGER = "cntrlr"
DEFAULT_SUCCESS_REQUEUE_SECONDS = 1800.0
DEFAULT_ERROR_REQUEUE_SECONDS = 360.0

EVENT_TYPE_NORMAL = "Normal"
EVENT_REASON_BAD_SOURCE = "BadNooBaaSource"
EVENT_ACTION_CORRECTING = "Correcting"


@dataclass(frozen=True)
class Action:
    """Requeue directive returned by every reconcile outcome.

    ``requeue_after`` is a delay in seconds, or ``None`` to wait for the next
    change notification.
    """

    requeue_after: float | None = None

    @classmethod
    def requeue(cls, seconds: float) -> Action:
        if seconds < 0:
            raise ValueError(f"requeue delay must be >= 0, got: {seconds}")
        return cls(requeue_after=float(seconds))

    @classmethod
    def await_change(cls) -> Action:
        return cls(requeue_after=None)


@dataclass(frozen=True)
class Context:
    """Everything a reconcile needs, injected once by the manager."""

    custom_api: Any
    events_api: Any
    state: ControllerState
    metrics: ControllerMetrics
    field_manager: str = DEFAULT_FIELD_MANAGER
    success_requeue_seconds: float = DEFAULT_SUCCESS_REQUEUE_SECONDS
    error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS
    monotonic: Callable[[], float] = time.monotonic


def reconcile(source: NooBaaSource, ctx: Context) -> Action:
    """Converge one NooBaaSource toward the status computed from its spec.

    1. Record the reconcile start in the shared state.
    2. Compute the status from ``spec`` alone (stored status is ignored).
    3. Server-side apply the status sub-resource with a forced field manager.
    4. Publish one ``BadNooBaaSource`` event when the source is classified bad.
    5. Record duration and the handled counter.

    Steps 3 and 4 raise :class:`StatusPatchError` / :class:`EventPublishError`
    on API failure; the controller loop then consults :func:`error_policy`.
    Reapplying the same spec is a no-op at the storage layer, so a partially
    failed reconcile is repaired by the next one.
    """
    start = ctx.monotonic()
    ctx.state.record_event()
    reporter = ctx.state.reporter
    name, namespace = source.name, source.namespace

    status = desired_status(source.spec)
    LOGGER.info(
        "Reconciling NooBaaSource %s/%s (uid=%s) with status %s",
        namespace,
        name,
        source.uid,
        status.to_dict(),
    )

    try:
        kube.apply_status(
            custom_api=ctx.custom_api,
            namespace=namespace,
            name=name,
            body=status_apply_body(status),
            field_manager=ctx.field_manager,
        )
    except ApiException as exc:
        raise StatusPatchError(
            f"Failed to apply status for NooBaaSource {namespace}/{name}: {exc.status} {exc.reason}",
            cause=exc,
        ) from exc
    except HTTPError as exc:
        raise StatusPatchError(
            f"Failed to apply status for NooBaaSource {namespace}/{name}: {exc}", cause=exc
        ) from exc

    if status.is_bad:
        LOGGER.info("NooBaaSource %s/%s is classified bad; publishing event", namespace, name)
        try:
            kube.publish_event(
                events_api=ctx.events_api,
                regarding=object_reference(source),
                reporting_controller=reporter.controller,
                reporting_instance=reporter.instance or reporter.controller,
                type_=EVENT_TYPE_NORMAL,
                reason=EVENT_REASON_BAD_SOURCE,
                note=f"Sending `{name}` to detention",
                action=EVENT_ACTION_CORRECTING,
            )
        except ApiException as exc:
            raise EventPublishError(
                f"Failed to publish event for NooBaaSource {namespace}/{name}: "
                f"{exc.status} {exc.reason}",
                cause=exc,
            ) from exc
        except HTTPError as exc:
            raise EventPublishError(
                f"Failed to publish event for NooBaaSource {namespace}/{name}: {exc}", cause=exc
            ) from exc

    ctx.metrics.observe_reconcile(ctx.monotonic() - start)
    LOGGER.info("Reconciled NooBaaSource %s/%s", namespace, name)
    return Action.requeue(ctx.success_requeue_seconds)


def error_policy(error: Exception, source: NooBaaSource, ctx: Context) -> Action:
    """Map any reconcile failure to a fixed-delay requeue."""
    LOGGER.warning(
        "Reconcile of NooBaaSource %s/%s (uid=%s) failed: %s; requeue in %.0fs",
        source.namespace,
        source.name,
        source.uid,
        error,
        ctx.error_requeue_seconds,
    )
    ctx.metrics.reconcile_errors.inc()
    return Action.requeue(ctx.error_requeue_seconds)
