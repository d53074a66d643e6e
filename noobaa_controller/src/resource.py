from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from noobaa_controller.src.errors import ResourceDecodeError

GROUP = "knative.dev"
VERSION = "v1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "NooBaaSource"
PLURAL = "noobaasources"
SINGULAR = "noobaasource"

BAD_MARKER = "bad"


def _require_mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ResourceDecodeError(f"{path} must be an object, got {type(value).__name__}")
    return value


def _require_str(data: Mapping[str, Any], key: str, path: str) -> str:
    value = data.get(key)
    if value is None:
        raise ResourceDecodeError(f"{path}.{key} is required")
    if not isinstance(value, str):
        raise ResourceDecodeError(f"{path}.{key} must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str, path: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ResourceDecodeError(f"{path}.{key} must be a string")
    return value


@dataclass(frozen=True)
class Source:
    """Event source: the NooBaa management RPC endpoint and the watched bucket."""

    rpc_url: str
    rpc_secret: str
    bucket: str

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec.source") -> Source:
        data = _require_mapping(data, path)
        return cls(
            rpc_url=_require_str(data, "rpcUrl", path),
            rpc_secret=_require_str(data, "rpcSecret", path),
            bucket=_require_str(data, "bucket", path),
        )


@dataclass(frozen=True)
class KReference:
    """Enough information to address the sink object."""

    kind: str
    name: str
    namespace: str | None = None
    api_version: str | None = None
    group: str | None = None

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec.sink.ref") -> KReference:
        data = _require_mapping(data, path)
        return cls(
            kind=_require_str(data, "kind", path),
            name=_require_str(data, "name", path),
            namespace=_optional_str(data, "namespace", path),
            api_version=_optional_str(data, "apiVersion", path),
            group=_optional_str(data, "group", path),
        )


@dataclass(frozen=True)
class Destination:
    """Sink of the source: an addressable object reference or a direct URI."""

    ref: KReference | None = None
    uri: str | None = None

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec.sink") -> Destination:
        data = _require_mapping(data, path)
        raw_ref = data.get("ref")
        return cls(
            ref=None if raw_ref is None else KReference.from_dict(raw_ref, f"{path}.ref"),
            uri=_optional_str(data, "uri", path),
        )


@dataclass(frozen=True)
class CloudEventOverrides:
    """Attribute extensions set on every outbound CloudEvent."""

    extensions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec.ceOverrides") -> CloudEventOverrides:
        data = _require_mapping(data, path)
        raw = data.get("extensions")
        if raw is None:
            raise ResourceDecodeError(f"{path}.extensions is required")
        raw = _require_mapping(raw, f"{path}.extensions")
        extensions: dict[str, str] = {}
        for key, value in raw.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ResourceDecodeError(f"{path}.extensions must map strings to strings")
            extensions[key] = value
        return cls(extensions=extensions)


@dataclass(frozen=True)
class NooBaaSourceSpec:
    """Author-owned portion of a NooBaaSource."""

    name: str
    source: Source
    sink: Destination
    ce_overrides: CloudEventOverrides | None = None

    @classmethod
    def from_dict(cls, data: Any, path: str = "spec") -> NooBaaSourceSpec:
        data = _require_mapping(data, path)
        if data.get("source") is None:
            raise ResourceDecodeError(f"{path}.source is required")
        if data.get("sink") is None:
            raise ResourceDecodeError(f"{path}.sink is required")
        raw_overrides = data.get("ceOverrides")
        return cls(
            name=_require_str(data, "name", path),
            source=Source.from_dict(data["source"], f"{path}.source"),
            sink=Destination.from_dict(data["sink"], f"{path}.sink"),
            ce_overrides=(
                None
                if raw_overrides is None
                else CloudEventOverrides.from_dict(raw_overrides, f"{path}.ceOverrides")
            ),
        )


@dataclass(frozen=True)
class NooBaaSourceStatus:
    """Controller-owned status sub-resource."""

    is_bad: bool

    @classmethod
    def from_dict(cls, data: Any, path: str = "status") -> NooBaaSourceStatus:
        data = _require_mapping(data, path)
        value = data.get("is_bad")
        if not isinstance(value, bool):
            raise ResourceDecodeError(f"{path}.is_bad must be a boolean")
        return cls(is_bad=value)

    def to_dict(self) -> dict[str, Any]:
        return {"is_bad": self.is_bad}


@dataclass(frozen=True)
class NooBaaSource:
    """A decoded NooBaaSource instance as seen on the watch stream.

    The status is carried for completeness only; reconciliation always
    recomputes it from ``spec``.
    """

    name: str
    namespace: str
    spec: NooBaaSourceSpec
    status: NooBaaSourceStatus | None = None
    uid: str | None = None
    resource_version: str | None = None
    generation: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @classmethod
    def from_dict(cls, obj: Any) -> NooBaaSource:
        """Decode a custom object dict as returned by ``CustomObjectsApi``."""
        obj = _require_mapping(obj, "object")
        metadata = _require_mapping(obj.get("metadata"), "metadata")
        name = _require_str(metadata, "name", "metadata")
        namespace = _require_str(metadata, "namespace", "metadata")

        raw_generation = metadata.get("generation")
        if raw_generation is not None and (
            isinstance(raw_generation, bool) or not isinstance(raw_generation, int)
        ):
            raise ResourceDecodeError("metadata.generation must be an integer")

        raw_status = obj.get("status")
        try:
            status = None if raw_status is None else NooBaaSourceStatus.from_dict(raw_status)
        except ResourceDecodeError:
            # Status is never an input; a foreign or partial status must not
            # block reconciliation from rewriting it.
            status = None

        return cls(
            name=name,
            namespace=namespace,
            spec=NooBaaSourceSpec.from_dict(obj.get("spec")),
            status=status,
            uid=_optional_str(metadata, "uid", "metadata"),
            resource_version=_optional_str(metadata, "resourceVersion", "metadata"),
            generation=raw_generation,
        )


def classify(spec: NooBaaSourceSpec, marker: str = BAD_MARKER) -> bool:
    """Return True when the logical name contains the marker (case-sensitive substring)."""
    return marker in spec.name


def desired_status(spec: NooBaaSourceSpec) -> NooBaaSourceStatus:
    return NooBaaSourceStatus(is_bad=classify(spec))


def status_apply_body(status: NooBaaSourceStatus) -> dict[str, Any]:
    """Build the server-side apply document for the status sub-resource."""
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "status": status.to_dict(),
    }


def object_reference(source: NooBaaSource) -> dict[str, Any]:
    """Return the involved-object reference used to attach events to *source*."""
    reference: dict[str, Any] = {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "name": source.name,
        "namespace": source.namespace,
    }
    if source.uid:
        reference["uid"] = source.uid
    if source.resource_version:
        reference["resourceVersion"] = source.resource_version
    return reference
