from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1ObjectReference

from cspc_operator.src.kube import OPENEBS_GROUP, OPENEBS_VERSION

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


CSPC_GVK = GroupVersionKind(OPENEBS_GROUP, OPENEBS_VERSION, "CStorPoolCluster")
BLOCK_DEVICE_GVK = GroupVersionKind(OPENEBS_GROUP, OPENEBS_VERSION, "BlockDevice")


class Scheme:
    """Registry mapping resource plurals to their group/version/kind.

    Writers go through :func:`add_to_scheme`, which holds a module lock.
    """

    def __init__(self) -> None:
        self._kinds: dict[str, GroupVersionKind] = {}
        self.registered = False

    def add_known_type(self, plural: str, gvk: GroupVersionKind) -> None:
        self._kinds[plural] = gvk

    def kind_for(self, plural: str) -> GroupVersionKind:
        try:
            return self._kinds[plural]
        except KeyError:
            raise LookupError(f"resource {plural} is not registered in the scheme") from None

    def object_reference(self, obj: Any, plural: str) -> V1ObjectReference:
        """Build an event ``involvedObject`` reference for a cached object.

        Raw custom objects carry ``apiVersion``/``kind``; the registered kind
        fills them in when the object omits them.
        """
        gvk = self.kind_for(plural)
        metadata = obj.get("metadata", {}) if isinstance(obj, dict) else {}
        return V1ObjectReference(
            api_version=(obj.get("apiVersion") if isinstance(obj, dict) else None)
            or gvk.api_version,
            kind=(obj.get("kind") if isinstance(obj, dict) else None) or gvk.kind,
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
        )


SCHEME = Scheme()
_scheme_lock = threading.Lock()


def add_to_scheme(scheme: Scheme = SCHEME) -> None:
    """Register the OpenEBS kinds once; safe to call from concurrent builders."""
    with _scheme_lock:
        if scheme.registered:
            return
        scheme.add_known_type("cstorpoolclusters", CSPC_GVK)
        scheme.add_known_type("blockdevices", BLOCK_DEVICE_GVK)
        scheme.registered = True
        LOGGER.debug("Registered OpenEBS kinds in scheme")
