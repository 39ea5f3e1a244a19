from __future__ import annotations

import logging
import socket
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, CoreV1Event, V1EventSource, V1ObjectMeta

from cspc_operator.src.kube import KubeClient
from cspc_operator.src.metrics import METRICS
from cspc_operator.src.scheme import SCHEME, Scheme

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventRecorder:
    """Emits Kubernetes events against watched objects.

    Events are best effort: an API failure is logged and counted, never raised.
    """

    def __init__(
        self,
        kube_client: KubeClient,
        component: str,
        scheme: Scheme = SCHEME,
        plural: str = "cstorpoolclusters",
    ) -> None:
        self.core_api = kube_client.core_v1
        self.component = component
        self.scheme = scheme
        self.plural = plural
        self.host = socket.gethostname()

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        reference = self.scheme.object_reference(obj, self.plural)
        namespace = reference.namespace or "default"
        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(generate_name=f"{reference.name}.", namespace=namespace),
            involved_object=reference,
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component, host=self.host),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as exc:
            METRICS.events_total.labels(type=event_type, outcome="error").inc()
            LOGGER.warning(
                "Failed to record %s event %s for %s/%s: %s",
                event_type,
                reason,
                namespace,
                reference.name,
                exc.reason,
            )
            return
        METRICS.events_total.labels(type=event_type, outcome="recorded").inc()
