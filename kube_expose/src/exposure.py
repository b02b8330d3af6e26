from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import (
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
)

SERVICE_PORT = 80
SERVICE_PORT_NAME = "http"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kube-expose"


class MalformedKeyError(ValueError):
    """Raised when a queue key cannot be split into namespace and name."""


@dataclass(frozen=True)
class WorkloadRef:
    """Identity of a workload; the only thing carried through the work queue."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return workload_key(self.namespace, self.name)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class WorkloadSnapshot:
    """Cached view of a Deployment as last seen by the informer."""

    namespace: str
    name: str
    template_labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return workload_key(self.namespace, self.name)


@dataclass(frozen=True)
class ExposureSpec:
    """Desired Service/Ingress shape for one workload.

    Recomputed on every reconcile and never stored, so there is no cached
    desired state that could drift from the cluster.
    """

    namespace: str
    name: str
    selector: dict[str, str]
    service_type: str = "LoadBalancer"
    ingress_class_name: str | None = None
    port: int = SERVICE_PORT

    @property
    def route_path(self) -> str:
        return f"/{self.name}"


def workload_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` queue key (just ``name`` when namespace is empty)."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: Any) -> WorkloadRef:
    """Split a ``namespace/name`` key into a :class:`WorkloadRef`.

    A bare ``name`` is accepted and addresses the empty namespace.  Anything
    else (non-strings, more than one ``/``, empty segments) raises
    :class:`MalformedKeyError`.
    """
    if not isinstance(key, str):
        raise MalformedKeyError(f"unexpected key type {type(key).__name__}: {key!r}")

    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
        if not namespace:
            raise MalformedKeyError(f"empty namespace in key {key!r}")
    else:
        raise MalformedKeyError(f"unexpected key format {key!r}")

    if not name:
        raise MalformedKeyError(f"empty name in key {key!r}")
    return WorkloadRef(namespace=namespace, name=name)


def template_labels(deployment: Any) -> dict[str, str]:
    """Extract pod template labels from a Deployment object safely."""
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in labels.items()
        if isinstance(k, str)
    }


def snapshot_from_deployment(deployment: Any) -> WorkloadSnapshot | None:
    """Build a snapshot from a Deployment, or ``None`` if it has no name."""
    metadata = getattr(deployment, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    return WorkloadSnapshot(
        namespace=getattr(metadata, "namespace", None) or "",
        name=name,
        template_labels=template_labels(deployment),
        resource_version=getattr(metadata, "resource_version", None),
    )


def _object_meta(spec: ExposureSpec) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=spec.name,
        namespace=spec.namespace,
        labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
    )


def build_service(spec: ExposureSpec) -> V1Service:
    """Return the Service fronting the workload's pods on port 80."""
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=_object_meta(spec),
        spec=V1ServiceSpec(
            type=spec.service_type,
            selector=dict(spec.selector),
            ports=[V1ServicePort(name=SERVICE_PORT_NAME, port=spec.port)],
        ),
    )


def build_ingress(spec: ExposureSpec) -> V1Ingress:
    """Return the Ingress routing ``/<name>`` (prefix match) to the Service."""
    backend = V1IngressBackend(
        service=V1IngressServiceBackend(
            name=spec.name,
            port=V1ServiceBackendPort(number=spec.port),
        )
    )
    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=_object_meta(spec),
        spec=V1IngressSpec(
            ingress_class_name=spec.ingress_class_name,
            rules=[
                V1IngressRule(
                    http=V1HTTPIngressRuleValue(
                        paths=[
                            V1HTTPIngressPath(
                                path=spec.route_path,
                                path_type="Prefix",
                                backend=backend,
                            )
                        ]
                    )
                )
            ],
        ),
    )
