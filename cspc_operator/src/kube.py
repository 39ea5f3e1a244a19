from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client import ApiClient, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from cspc_operator.src.config import OperatorError

LOGGER = logging.getLogger(__name__)

OPENEBS_GROUP = "openebs.io"
OPENEBS_VERSION = "v1alpha1"


class ClusterConfigError(OperatorError):
    """Raised when the control plane connection cannot be resolved."""


class ClientSetError(OperatorError):
    """Raised when one of the API client families cannot be constructed."""

    def __init__(self, family: str, cause: BaseException) -> None:
        super().__init__(f"error building {family} clientset: {cause}")
        self.family = family


@dataclass(frozen=True)
class ClusterConnection:
    """Resolved, read-only connection settings for the control plane.

    ``source`` records where the settings came from (a kubeconfig path or
    ``in-cluster``) for log messages.  Every client family builds its own
    :class:`ApiClient` from the shared ``configuration``.
    """

    configuration: client.Configuration
    source: str

    @property
    def host(self) -> str:
        return self.configuration.host

    def api_client(self) -> ApiClient:
        return ApiClient(configuration=self.configuration)


def resolve_config(kubeconfig_path: str | None) -> ClusterConnection:
    """Resolve how to reach the control plane.

    A non-empty ``kubeconfig_path`` is loaded as-is and any failure is fatal;
    there is no fallback to in-cluster discovery.  An empty path uses the pod
    service account, which likewise fails outside a cluster.
    """
    configuration = client.Configuration()
    if kubeconfig_path:
        if not os.path.isfile(kubeconfig_path):
            raise ClusterConfigError(f"kubeconfig {kubeconfig_path} does not exist")
        try:
            config.load_kube_config(
                config_file=kubeconfig_path,
                client_configuration=configuration,
                persist_config=False,
            )
        except (ConfigException, OSError, ValueError, yaml.YAMLError) as exc:
            raise ClusterConfigError(
                f"error loading kubeconfig {kubeconfig_path}: {exc}"
            ) from exc
        LOGGER.info("Loaded kubeconfig %s", kubeconfig_path)
        return ClusterConnection(configuration=configuration, source=kubeconfig_path)

    LOGGER.debug("Kubeconfig flag is empty")
    try:
        config.load_incluster_config(client_configuration=configuration)
    except ConfigException as exc:
        raise ClusterConfigError(f"error loading in-cluster configuration: {exc}") from exc
    LOGGER.info("Loaded in-cluster Kubernetes configuration")
    return ClusterConnection(configuration=configuration, source="in-cluster")


@dataclass(frozen=True)
class KubeClient:
    """Core Kubernetes API client family."""

    api_client: ApiClient
    core_v1: CoreV1Api


@dataclass(frozen=True)
class CustomResourceClient:
    """Typed facade over ``CustomObjectsApi`` for one API group/version."""

    family: str
    api: CustomObjectsApi
    group: str
    version: str

    def list(self, plural: str, namespace: str | None = None, **kwargs: Any) -> Any:
        if namespace:
            return self.api.list_namespaced_custom_object(
                self.group, self.version, namespace, plural, **kwargs
            )
        return self.api.list_cluster_custom_object(self.group, self.version, plural, **kwargs)

    def list_function(self, plural: str) -> Callable[..., Any]:
        """Return a cluster-wide list callable usable with ``watch.Watch().stream``."""

        def _list(**kwargs: Any) -> Any:
            return self.list(plural, **kwargs)

        return _list

    def get(self, plural: str, name: str, namespace: str | None = None) -> Any:
        if namespace:
            return self.api.get_namespaced_custom_object(
                self.group, self.version, namespace, plural, name
            )
        return self.api.get_cluster_custom_object(self.group, self.version, plural, name)

    def update(
        self, plural: str, name: str, body: dict[str, Any], namespace: str | None = None
    ) -> Any:
        if namespace:
            return self.api.replace_namespaced_custom_object(
                self.group, self.version, namespace, plural, name, body
            )
        return self.api.replace_cluster_custom_object(
            self.group, self.version, plural, name, body
        )

    def update_status(
        self, plural: str, name: str, body: dict[str, Any], namespace: str | None = None
    ) -> Any:
        """Replace only the ``status`` subresource of the object."""
        if namespace:
            return self.api.replace_namespaced_custom_object_status(
                self.group, self.version, namespace, plural, name, body
            )
        return self.api.replace_cluster_custom_object_status(
            self.group, self.version, plural, name, body
        )


def new_kube_client(connection: ClusterConnection) -> KubeClient:
    try:
        api_client = connection.api_client()
        return KubeClient(api_client=api_client, core_v1=CoreV1Api(api_client))
    except Exception as exc:
        raise ClientSetError("kubernetes", exc) from exc


def _new_custom_resource_client(family: str, connection: ClusterConnection) -> CustomResourceClient:
    try:
        api = CustomObjectsApi(connection.api_client())
    except Exception as exc:
        raise ClientSetError(family, exc) from exc
    return CustomResourceClient(
        family=family, api=api, group=OPENEBS_GROUP, version=OPENEBS_VERSION
    )


def new_openebs_client(connection: ClusterConnection) -> CustomResourceClient:
    """Client for the CStorPoolCluster domain."""
    return _new_custom_resource_client("openebs", connection)


def new_ndm_client(connection: ClusterConnection) -> CustomResourceClient:
    """Client for the node-disk-manager BlockDevice domain."""
    return _new_custom_resource_client("ndm", connection)
