from __future__ import annotations

import logging
import os

from kubernetes import client, config
from kubernetes.client import (
    AppsV1Api,
    CoreV1Api,
    NetworkingV1Api,
    V1DeleteOptions,
    V1Deployment,
    V1Ingress,
    V1Service,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.  ``KUBECONFIG`` overrides the
    default ``~/.kube/config`` location.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config_file = os.getenv("KUBECONFIG") or None
        config.load_kube_config(config_file=config_file)
        LOGGER.info("Loaded local kubeconfig %s", config_file or "(default location)")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, NetworkingV1Api]:
    """Return CoreV1, AppsV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.NetworkingV1Api()


def read_deployment(
    apps_api: AppsV1Api, namespace: str, name: str, timeout_seconds: int
) -> V1Deployment:
    """Read a Deployment straight from the API server, bypassing any cache."""
    return apps_api.read_namespaced_deployment(
        name=name,
        namespace=namespace,
        _request_timeout=timeout_seconds,
    )


def create_service(
    core_api: CoreV1Api, namespace: str, body: V1Service, timeout_seconds: int
) -> None:
    core_api.create_namespaced_service(
        namespace=namespace,
        body=body,
        _request_timeout=timeout_seconds,
    )


def delete_service(core_api: CoreV1Api, namespace: str, name: str, timeout_seconds: int) -> None:
    core_api.delete_namespaced_service(
        name=name,
        namespace=namespace,
        body=V1DeleteOptions(propagation_policy="Background"),
        _request_timeout=timeout_seconds,
    )


def create_ingress(
    networking_api: NetworkingV1Api, namespace: str, body: V1Ingress, timeout_seconds: int
) -> None:
    networking_api.create_namespaced_ingress(
        namespace=namespace,
        body=body,
        _request_timeout=timeout_seconds,
    )


def delete_ingress(
    networking_api: NetworkingV1Api, namespace: str, name: str, timeout_seconds: int
) -> None:
    networking_api.delete_namespaced_ingress(
        name=name,
        namespace=namespace,
        body=V1DeleteOptions(propagation_policy="Background"),
        _request_timeout=timeout_seconds,
    )
