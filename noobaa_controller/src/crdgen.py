from __future__ import annotations

import sys
from typing import Any, TextIO

import yaml

from noobaa_controller.src.resource import GROUP, KIND, PLURAL, SINGULAR, VERSION

_NULLABLE_STRING: dict[str, Any] = {"type": "string", "nullable": True}


def _spec_schema() -> dict[str, Any]:
    return {
        "description": "NooBaa Knative Source custom resource spec",
        "type": "object",
        "required": ["name", "sink", "source"],
        "properties": {
            "name": {"type": "string"},
            "source": {
                "description": "Source defines the event source",
                "type": "object",
                "required": ["bucket", "rpcSecret", "rpcUrl"],
                "properties": {
                    "bucket": {"type": "string"},
                    "rpcSecret": {"type": "string"},
                    "rpcUrl": {"type": "string"},
                },
            },
            "sink": {
                "type": "object",
                "properties": {
                    "ref": {
                        "type": "object",
                        "nullable": True,
                        "required": ["kind", "name"],
                        "properties": {
                            "apiVersion": dict(_NULLABLE_STRING),
                            "group": dict(_NULLABLE_STRING),
                            "kind": {"type": "string"},
                            "name": {"type": "string"},
                            "namespace": dict(_NULLABLE_STRING),
                        },
                    },
                    "uri": dict(_NULLABLE_STRING),
                },
            },
            "ceOverrides": {
                "type": "object",
                "nullable": True,
                "required": ["extensions"],
                "properties": {
                    "extensions": {
                        "type": "object",
                        "additionalProperties": {"type": "string"},
                    },
                },
            },
        },
    }


def crd_manifest() -> dict[str, Any]:
    """Return the CustomResourceDefinition for NooBaaSource with the status sub-resource enabled."""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "names": {
                "kind": KIND,
                "plural": PLURAL,
                "singular": SINGULAR,
                "shortNames": [],
                "categories": [],
            },
            "scope": "Namespaced",
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "additionalPrinterColumns": [],
                    "subresources": {"status": {}},
                    "schema": {
                        "openAPIV3Schema": {
                            "title": KIND,
                            "type": "object",
                            "required": ["spec"],
                            "properties": {
                                "spec": _spec_schema(),
                                "status": {
                                    "type": "object",
                                    "nullable": True,
                                    "required": ["is_bad"],
                                    "properties": {"is_bad": {"type": "boolean"}},
                                },
                            },
                        }
                    },
                }
            ],
        },
    }


def main(stream: TextIO | None = None) -> None:
    """Print the CRD manifest as YAML, suitable for ``kubectl apply -f -``."""
    yaml.safe_dump(crd_manifest(), stream or sys.stdout, sort_keys=False)


if __name__ == "__main__":
    main()
