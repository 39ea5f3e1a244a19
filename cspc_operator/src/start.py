from __future__ import annotations

import logging
import threading
import time

from cspc_operator.src.config import OperatorConfig, OperatorError
from cspc_operator.src.controller import ControllerBuilder
from cspc_operator.src.health import start_health_server
from cspc_operator.src.informers import new_kube_informer_factory, new_openebs_informer_factory
from cspc_operator.src.kube import (
    new_kube_client,
    new_ndm_client,
    new_openebs_client,
    resolve_config,
)

LOGGER = logging.getLogger(__name__)


def start(config: OperatorConfig, stop_event: threading.Event) -> None:
    """Bring the operator up and block until *stop_event* fires.

    Order matters:

    1. Resolve the cluster connection (kubeconfig or in-cluster).
    2. Build the kubernetes, openebs and ndm clients; any failure is fatal.
    3. Create both informer factories with the resolved resync interval.
    4. Assemble the controller.  This registers the CSPC informer and its
       event handlers, so it has to finish before the factories start.
    5. Start the factories in the background and block in ``controller.run``.

    Teardown runs in reverse once ``run`` returns or raises: workers are
    drained inside ``run``, then informer threads of both factories are joined
    within one ``shutdown_grace_seconds`` budget and the health server is
    stopped.  Startup failures propagate as ``OperatorError``.
    """
    connection = resolve_config(config.kubeconfig)
    LOGGER.info("Using control plane %s (%s)", connection.host, connection.source)

    kube_client = new_kube_client(connection)
    openebs_client = new_openebs_client(connection)
    ndm_client = new_ndm_client(connection)

    kube_informer_factory = new_kube_informer_factory(kube_client, config.resync_interval_seconds)
    cspc_informer_factory = new_openebs_informer_factory(
        openebs_client, config.resync_interval_seconds
    )

    controller = (
        ControllerBuilder(
            cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
            shutdown_grace_seconds=config.shutdown_grace_seconds,
        )
        .with_kube_client(kube_client)
        .with_openebs_client(openebs_client)
        .with_ndm_client(ndm_client)
        .with_cspc_synced(cspc_informer_factory)
        .with_cspc_lister(cspc_informer_factory)
        .with_recorder(kube_client)
        .with_event_handler(cspc_informer_factory)
        .with_workqueue_rate_limiting()
        .build()
    )

    try:
        health_server = start_health_server(ready=controller.ready, port=config.health_port)
    except OSError as exc:
        raise OperatorError(f"error starting health server on :{config.health_port}: {exc}") from exc

    try:
        kube_informer_factory.start(stop_event)
        cspc_informer_factory.start(stop_event)
        controller.run(config.threadiness, stop_event)
    finally:
        stop_event.set()
        deadline = time.monotonic() + config.shutdown_grace_seconds
        kube_informer_factory.shutdown(timeout=max(0.0, deadline - time.monotonic()))
        cspc_informer_factory.shutdown(timeout=max(0.0, deadline - time.monotonic()))
        health_server.shutdown()
        LOGGER.info("Operator stopped")
