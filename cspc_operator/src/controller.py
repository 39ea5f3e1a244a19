from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException

from cspc_operator.src.config import OperatorError
from cspc_operator.src.informers import (
    CSPC_KIND,
    InformerError,
    Lister,
    NotFoundError,
    ResourceEventHandler,
    SharedInformerFactory,
    object_key,
    split_key,
    wait_for_cache_sync,
)
from cspc_operator.src.kube import CustomResourceClient, KubeClient
from cspc_operator.src.metrics import METRICS
from cspc_operator.src.recorder import EVENT_TYPE_WARNING, EventRecorder
from cspc_operator.src.scheme import add_to_scheme
from cspc_operator.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

CONTROLLER_NAME = "cspc-operator"
WORKQUEUE_NAME = "CStorPoolClusters"


class ControllerBuildError(OperatorError):
    """Raised by :meth:`ControllerBuilder.build` when a dependency was never supplied."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"controller is missing required dependencies: {', '.join(missing)}")
        self.missing = missing


class CacheSyncError(OperatorError):
    """Raised when informer caches do not sync within the configured bound."""


class ReconcileError(RuntimeError):
    """Raised by a sync handler to have the key retried with backoff."""


def _block_device_names(cspc: Any) -> list[str]:
    spec = (cspc.get("spec") or {}) if isinstance(cspc, dict) else {}
    names: list[str] = []
    for pool in spec.get("pools") or []:
        for raid_group in pool.get("raidGroups") or []:
            for block_device in raid_group.get("blockDevices") or []:
                name = block_device.get("blockDeviceName")
                if name:
                    names.append(name)
    return names


class CSPCController:
    """Reconciles CStorPoolCluster objects observed by the OpenEBS informer.

    Instances are assembled by :class:`ControllerBuilder`; the dependency
    attributes are not meant to change after :meth:`ControllerBuilder.build`.

    ``ready`` is set once caches have synced and workers are running, and
    cleared again when :meth:`run` returns.
    """

    def __init__(
        self,
        cache_sync_timeout_seconds: float = 300,
        shutdown_grace_seconds: float = 30,
        logger: logging.Logger | None = None,
        informer_check_interval_seconds: float = 1.0,
    ) -> None:
        self.kube_client: KubeClient | None = None
        self.openebs_client: CustomResourceClient | None = None
        self.ndm_client: CustomResourceClient | None = None
        self.cspc_synced: Callable[[], bool] | None = None
        self.cspc_fatal_error: Callable[[], str | None] = lambda: None
        self.cspc_lister: Lister | None = None
        self.recorder: EventRecorder | None = None
        self.workqueue: RateLimitingQueue | None = None
        self.event_handler_registered = False

        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.informer_check_interval_seconds = informer_check_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.sync_handler: Callable[[str], None] = self.sync_cspc

        self.ready = threading.Event()
        self._stopping = threading.Event()
        self._workers: list[threading.Thread] = []

    def enqueue_cspc(self, obj: Any) -> None:
        try:
            key = object_key(obj)
        except ValueError:
            self.logger.warning("Ignoring CStorPoolCluster event without a name")
            return
        self.workqueue.add(key)

    def add_cspc(self, obj: Any) -> None:
        self.enqueue_cspc(obj)

    def update_cspc(self, old: Any, new: Any) -> None:
        self.enqueue_cspc(new)

    def delete_cspc(self, obj: Any) -> None:
        self.enqueue_cspc(obj)

    def sync_cspc(self, key: str) -> None:
        """Check that every block device referenced by the CSPC exists.

        Missing devices are reported as a ``Warning`` event on the CSPC and
        the key is retried with backoff.
        """
        namespace, name = split_key(key)
        try:
            cspc = self.cspc_lister.get(namespace, name)
        except NotFoundError:
            self.logger.info("CStorPoolCluster %s no longer exists", key)
            return

        metadata = (cspc.get("metadata") or {}) if isinstance(cspc, dict) else {}
        if metadata.get("deletionTimestamp"):
            self.logger.debug("CStorPoolCluster %s is being deleted", key)
            return

        missing: list[str] = []
        for block_device in _block_device_names(cspc):
            try:
                self.ndm_client.get("blockdevices", block_device, namespace=namespace)
            except ApiException as exc:
                if exc.status == 404:
                    missing.append(block_device)
                    continue
                raise

        if missing:
            message = f"block device(s) {', '.join(missing)} not found"
            self.recorder.event(cspc, EVENT_TYPE_WARNING, "BlockDeviceNotFound", message)
            raise ReconcileError(f"{key}: {message}")

        self.logger.debug("CStorPoolCluster %s reconciled", key)

    def process_next_work_item(self) -> bool:
        """Handle one key from the queue; return False when the worker should exit."""
        key, shutdown = self.workqueue.get()
        if shutdown:
            return False
        if self._stopping.is_set():
            self.workqueue.done(key)
            return False

        try:
            with METRICS.reconcile_duration_seconds.time():
                self.sync_handler(key)
        except Exception:
            self.workqueue.add_rate_limited(key)
            METRICS.reconcile_total.labels(result="error").inc()
            self.logger.exception(
                "Error syncing CStorPoolCluster %s (requeue %d)",
                key,
                self.workqueue.num_requeues(key),
            )
        else:
            self.workqueue.forget(key)
            METRICS.reconcile_total.labels(result="success").inc()
        finally:
            self.workqueue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Block until *stop_event* fires, reconciling with ``threadiness`` workers.

        1. Waits for the CSPC cache to sync, bounded by
           ``cache_sync_timeout_seconds``.  A timeout raises
           :class:`CacheSyncError`; a stop during the wait returns cleanly.
        2. Starts ``threadiness`` worker threads sharing the work queue.
        3. On stop, shuts the queue down and joins workers within
           ``shutdown_grace_seconds``.

        If the CSPC informer stops for good (RBAC denial) at any point, workers
        are shut down the same way and :class:`InformerError` is raised.
        """
        if threadiness < 1:
            raise ValueError(f"threadiness must be >= 1, got: {threadiness}")

        self.logger.info("Starting CStorPoolCluster controller")
        self.logger.info("Waiting for informer caches to sync")
        sync_started = time.monotonic()
        synced = wait_for_cache_sync(
            stop_event,
            lambda: self.cspc_synced() or self.cspc_fatal_error() is not None,
            timeout=self.cache_sync_timeout_seconds,
        )
        informer_error = self.cspc_fatal_error()
        if not synced or informer_error is not None:
            self._stopping.set()
            self.workqueue.shut_down()
            if informer_error is not None:
                raise InformerError(f"CStorPoolCluster informer stopped: {informer_error}")
            if stop_event.is_set():
                self.logger.info("Stop requested before informer caches synced")
                return
            raise CacheSyncError(
                f"failed to wait for caches to sync within {self.cache_sync_timeout_seconds}s"
            )
        METRICS.cache_sync_duration_seconds.observe(time.monotonic() - sync_started)

        self.logger.info("Starting %d workers", threadiness)
        self._workers = [
            threading.Thread(
                target=self._run_worker,
                name=f"{CONTROLLER_NAME}-worker-{index}",
                daemon=True,
            )
            for index in range(threadiness)
        ]
        for worker in self._workers:
            worker.start()
        self.ready.set()
        self.logger.info("Started workers")

        while not stop_event.wait(timeout=self.informer_check_interval_seconds):
            informer_error = self.cspc_fatal_error()
            if informer_error is not None:
                self.shutdown_workers()
                raise InformerError(f"CStorPoolCluster informer stopped: {informer_error}")
        self.shutdown_workers()

    def shutdown_workers(self) -> None:
        """Stop handing out work and join every worker within the grace period."""
        self.logger.info("Shutting down workers")
        self.ready.clear()
        self._stopping.set()
        self.workqueue.shut_down()

        deadline = time.monotonic() + self.shutdown_grace_seconds
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
        leaked = [worker.name for worker in self._workers if worker.is_alive()]
        if leaked:
            self.logger.error(
                "Workers did not stop within %ss: %s",
                self.shutdown_grace_seconds,
                ", ".join(leaked),
            )
        self.workqueue.join_waiter(timeout=max(0.0, deadline - time.monotonic()))
        self.logger.info("Workers stopped")

    def alive_workers(self) -> list[threading.Thread]:
        return [worker for worker in self._workers if worker.is_alive()]


class ControllerBuilder:
    """Fluent assembly of a :class:`CSPCController`.

    Each ``with_*`` step records one dependency and returns the builder.  Only
    :meth:`with_event_handler` has a side effect: it registers the
    controller's callbacks with the CSPC informer, so it must run before the
    factory is started.  :meth:`build` is the single validation point.
    """

    def __init__(
        self,
        cache_sync_timeout_seconds: float = 300,
        shutdown_grace_seconds: float = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = CSPCController(
            cache_sync_timeout_seconds=cache_sync_timeout_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
            logger=logger,
        )

    def with_kube_client(self, kube_client: KubeClient) -> ControllerBuilder:
        self.controller.kube_client = kube_client
        return self

    def with_openebs_client(self, openebs_client: CustomResourceClient) -> ControllerBuilder:
        self.controller.openebs_client = openebs_client
        return self

    def with_ndm_client(self, ndm_client: CustomResourceClient) -> ControllerBuilder:
        self.controller.ndm_client = ndm_client
        return self

    def with_cspc_synced(self, factory: SharedInformerFactory) -> ControllerBuilder:
        informer = factory.informer_for(CSPC_KIND)
        self.controller.cspc_synced = informer.has_synced
        self.controller.cspc_fatal_error = informer.fatal_error
        return self

    def with_cspc_lister(self, factory: SharedInformerFactory) -> ControllerBuilder:
        self.controller.cspc_lister = factory.informer_for(CSPC_KIND).lister()
        return self

    def with_recorder(self, kube_client: KubeClient) -> ControllerBuilder:
        self.controller.recorder = EventRecorder(kube_client, component=CONTROLLER_NAME)
        return self

    def with_event_handler(self, factory: SharedInformerFactory) -> ControllerBuilder:
        controller = self.controller
        factory.informer_for(CSPC_KIND).add_event_handler(
            ResourceEventHandler(
                on_add=controller.add_cspc,
                on_update=controller.update_cspc,
                on_delete=controller.delete_cspc,
            )
        )
        controller.event_handler_registered = True
        return self

    def with_workqueue_rate_limiting(self) -> ControllerBuilder:
        self.controller.workqueue = RateLimitingQueue(
            default_controller_rate_limiter(), name=WORKQUEUE_NAME
        )
        return self

    def build(self) -> CSPCController:
        controller = self.controller
        required: tuple[tuple[str, bool], ...] = (
            ("kube client", controller.kube_client is not None),
            ("openebs client", controller.openebs_client is not None),
            ("ndm client", controller.ndm_client is not None),
            ("cspc synced", controller.cspc_synced is not None),
            ("cspc lister", controller.cspc_lister is not None),
            ("event recorder", controller.recorder is not None),
            ("event handler", controller.event_handler_registered),
            ("workqueue", controller.workqueue is not None),
        )
        missing = [name for name, supplied in required if not supplied]
        if missing:
            raise ControllerBuildError(missing)

        add_to_scheme()
        return controller
