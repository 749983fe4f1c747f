from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, V1ConfigMap, V1ObjectMeta
from kubernetes.config.config_exception import ConfigException

from ctrcfg.src.retry import is_not_found

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


@dataclass(frozen=True)
class ResourceKind:
    """Coordinates of a cluster-scoped custom resource."""

    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


MACHINE_CONFIG = ResourceKind(
    "machineconfiguration.openshift.io", "v1", "machineconfigs", "MachineConfig"
)
MACHINE_CONFIG_POOL = ResourceKind(
    "machineconfiguration.openshift.io", "v1", "machineconfigpools", "MachineConfigPool"
)
CONTROLLER_CONFIG = ResourceKind(
    "machineconfiguration.openshift.io", "v1", "controllerconfigs", "ControllerConfig"
)
CONTAINER_RUNTIME_CONFIG = ResourceKind(
    "machineconfiguration.openshift.io", "v1", "containerruntimeconfigs", "ContainerRuntimeConfig"
)
IMAGE_CONFIG = ResourceKind("config.openshift.io", "v1", "images", "Image")
CLUSTER_VERSION = ResourceKind("config.openshift.io", "v1", "clusterversions", "ClusterVersion")
IMAGE_CONTENT_SOURCE_POLICY = ResourceKind(
    "operator.openshift.io", "v1alpha1", "imagecontentsourcepolicies", "ImageContentSourcePolicy"
)

CONTROLLER_CONFIG_NAME = "machine-config-controller"


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


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def format_label_selector(match_labels: dict[str, str] | None) -> str | None:
    if not match_labels:
        return None
    return ",".join(f"{key}={value}" if value else key for key, value in match_labels.items())


class ClusterStore:
    """Thin adapter over the Kubernetes API used for every cluster write.

    All objects are exchanged as plain dictionaries.  Errors propagate as
    :class:`kubernetes.client.ApiException`; callers classify them with
    :func:`ctrcfg.src.retry.is_not_found` and
    :func:`ctrcfg.src.retry.is_conflict`.
    """

    def __init__(self, custom_api: CustomObjectsApi, core_api: CoreV1Api) -> None:
        self.custom_api = custom_api
        self.core_api = core_api

    def get(self, kind: ResourceKind, name: str) -> dict[str, Any]:
        return self.custom_api.get_cluster_custom_object(
            kind.group, kind.version, kind.plural, name
        )

    def get_or_none(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        try:
            return self.get(kind, name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def list(
        self, kind: ResourceKind, match_labels: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        selector = format_label_selector(match_labels)
        if selector:
            kwargs["label_selector"] = selector
        result = self.custom_api.list_cluster_custom_object(
            kind.group, kind.version, kind.plural, **kwargs
        )
        return list(result.get("items") or [])

    def list_function(self, kind: ResourceKind) -> Callable[..., dict[str, Any]]:
        """Return a list call for *kind* usable with :class:`kubernetes.watch.Watch`.

        ``Watch.stream`` inspects the wrapped function's docstring to find the
        return type, so a plain closure forwarding to ``CustomObjectsApi`` is
        returned instead of a ``functools.partial``.
        """
        custom_api = self.custom_api

        def list_objects(**kwargs: Any) -> dict[str, Any]:
            """list_cluster_custom_object

            :return: object
            """
            return custom_api.list_cluster_custom_object(
                kind.group, kind.version, kind.plural, **kwargs
            )

        return list_objects

    def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.create_cluster_custom_object(
            kind.group, kind.version, kind.plural, body
        )

    def replace(self, kind: ResourceKind, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.replace_cluster_custom_object(
            kind.group, kind.version, kind.plural, name, body
        )

    def replace_status(
        self, kind: ResourceKind, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return self.custom_api.replace_cluster_custom_object_status(
            kind.group, kind.version, kind.plural, name, body
        )

    def patch(self, kind: ResourceKind, name: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Apply a JSON merge patch (RFC 7386) to the named object."""
        return self.custom_api.patch_cluster_custom_object(
            kind.group,
            kind.version,
            kind.plural,
            name,
            patch,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )

    def delete(self, kind: ResourceKind, name: str) -> bool:
        """Delete the named object.  Returns False if it was already gone."""
        try:
            self.custom_api.delete_cluster_custom_object(
                kind.group, kind.version, kind.plural, name
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def config_map_exists(self, namespace: str, name: str) -> bool:
        try:
            self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def create_config_map(self, namespace: str, name: str) -> None:
        body = V1ConfigMap(metadata=V1ObjectMeta(name=name, namespace=namespace))
        self.core_api.create_namespaced_config_map(namespace=namespace, body=body)
