from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    AdmissionregistrationV1Api,
    ApiException,
    AppsV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

EXTRA_ARGS_ENV = "EXTRA_ARGS"


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


@dataclass(frozen=True)
class KubeClients:
    """The typed API clients the operator talks to."""

    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi
    admission: AdmissionregistrationV1Api
    coordination: CoordinationV1Api
    api_client: Any = None


def build_clients() -> KubeClients:
    """Return API clients using the active kube configuration."""
    api_client = client.ApiClient()
    return KubeClients(
        core=client.CoreV1Api(api_client),
        apps=client.AppsV1Api(api_client),
        custom=client.CustomObjectsApi(api_client),
        admission=client.AdmissionregistrationV1Api(api_client),
        coordination=client.CoordinationV1Api(api_client),
        api_client=api_client,
    )


def upsert_config_map(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: dict[str, str],
    *,
    request_timeout: float = 60.0,
) -> None:
    """Replace the ConfigMap, creating it when it does not exist yet."""
    body = client.V1ConfigMap(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        data=data,
    )
    try:
        core_api.replace_namespaced_config_map(
            name=name, namespace=namespace, body=body, _request_timeout=request_timeout
        )
    except ApiException as exc:
        if exc.status != 404:
            raise
        core_api.create_namespaced_config_map(namespace=namespace, body=body, _request_timeout=request_timeout)
        LOGGER.info("Created ConfigMap %s/%s", namespace, name)


def upsert_secret(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: dict[str, str],
    *,
    request_timeout: float = 60.0,
) -> None:
    """Replace the Secret (``data`` already base64-encoded), creating it on 404."""
    body = client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        data=data,
    )
    try:
        core_api.replace_namespaced_secret(
            name=name, namespace=namespace, body=body, _request_timeout=request_timeout
        )
    except ApiException as exc:
        if exc.status != 404:
            raise
        core_api.create_namespaced_secret(namespace=namespace, body=body, _request_timeout=request_timeout)
        LOGGER.info("Created Secret %s/%s", namespace, name)


def set_container_extra_args(workload: Any, container_name: str, extra_args: str) -> bool:
    """Set the ``EXTRA_ARGS`` env var on one container of a workload.

    Returns ``False`` when the workload has no pod spec or no such container.
    Any previous ``EXTRA_ARGS`` entry is replaced.
    """
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    containers = getattr(pod_spec, "containers", None) or []
    for container in containers:
        if container.name != container_name:
            continue
        env = [e for e in (container.env or []) if e.name != EXTRA_ARGS_ENV]
        env.append(client.V1EnvVar(name=EXTRA_ARGS_ENV, value=extra_args))
        container.env = env
        return True
    return False


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def format_flags(flags: list[tuple[str, str]]) -> str:
    """Render ``--flag="value"`` pairs as one space separated string."""
    return " ".join(f'--{name}="{_quote(value)}"' for name, value in flags)
