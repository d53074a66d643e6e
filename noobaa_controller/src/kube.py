from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import CustomObjectsApi, EventsV1Api
from kubernetes.config.config_exception import ConfigException

from noobaa_controller.src.resource import GROUP, PLURAL, VERSION

LOGGER = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, EventsV1Api]:
    """Return CustomObjects and events.k8s.io/v1 API clients using the active kube configuration."""
    return client.CustomObjectsApi(), client.EventsV1Api()


def list_function(
    custom_api: CustomObjectsApi, namespace: str | None = None
) -> tuple[Callable[..., Any], dict[str, Any]]:
    """Return the list callable and its fixed kwargs for NooBaaSources.

    The same pair drives plain lists and ``watch.Watch().stream``, scoped to
    one namespace or cluster-wide when *namespace* is empty.
    """
    kwargs: dict[str, Any] = {"group": GROUP, "version": VERSION, "plural": PLURAL}
    if namespace:
        kwargs["namespace"] = namespace
        return custom_api.list_namespaced_custom_object, kwargs
    return custom_api.list_cluster_custom_object, kwargs


def list_sources(
    custom_api: CustomObjectsApi,
    namespace: str | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """List NooBaaSource objects and return the raw list document."""
    fn, kwargs = list_function(custom_api, namespace)
    if limit is not None:
        kwargs["limit"] = limit
    return fn(**kwargs)


def apply_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    body: dict[str, Any],
    field_manager: str,
) -> Any:
    """Server-side apply *body* to the status sub-resource, forcing field ownership.

    Fields owned by other managers are left alone; conflicts on the fields
    in *body* resolve in favour of *field_manager*.
    """
    return custom_api.patch_namespaced_custom_object_status(
        group=GROUP,
        version=VERSION,
        namespace=namespace,
        plural=PLURAL,
        name=name,
        body=body,
        field_manager=field_manager,
        force=True,
        _content_type=APPLY_PATCH_CONTENT_TYPE,
    )


def micro_time(value: datetime) -> str:
    """Format *value* as a Kubernetes MicroTime (RFC 3339, six fractional digits)."""
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def publish_event(
    events_api: EventsV1Api,
    regarding: dict[str, Any],
    reporting_controller: str,
    reporting_instance: str,
    type_: str,
    reason: str,
    note: str,
    action: str,
    now: datetime | None = None,
) -> Any:
    """Create an ``events.k8s.io/v1`` Event attached to *regarding*."""
    namespace = regarding["namespace"]
    event_time = micro_time(now or datetime.now(UTC))
    body = {
        "apiVersion": "events.k8s.io/v1",
        "kind": "Event",
        "metadata": {
            "generateName": f"{regarding['name']}.",
            "namespace": namespace,
        },
        "eventTime": event_time,
        "regarding": regarding,
        "type": type_,
        "reason": reason,
        "note": note,
        "action": action,
        "reportingController": reporting_controller,
        "reportingInstance": reporting_instance,
    }
    return events_api.create_namespaced_event(namespace=namespace, body=body)
