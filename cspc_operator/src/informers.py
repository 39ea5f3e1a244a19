from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from cspc_operator.src.config import OperatorError
from cspc_operator.src.kube import CustomResourceClient, KubeClient
from cspc_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class InformerError(OperatorError):
    """Raised when an informer or factory is used out of order, or an informer dies."""


class NotFoundError(LookupError):
    """Raised by a :class:`Lister` when the requested object is not cached."""


@dataclass(frozen=True)
class ResourceKind:
    """A watched resource and how to obtain its list callable from a client family."""

    name: str
    list_function: Callable[[Any], Callable[..., Any]]


CSPC_KIND = ResourceKind(
    name="cstorpoolclusters",
    list_function=lambda openebs_client: openebs_client.list_function("cstorpoolclusters"),
)


def _field(obj: Any, dict_key: str, attr: str | None = None) -> Any:
    """Read a field from either a raw dict or a generated kubernetes model."""
    if isinstance(obj, dict):
        return obj.get(dict_key)
    return getattr(obj, attr or dict_key, None)


def object_namespace(obj: Any) -> str | None:
    return _field(_field(obj, "metadata"), "namespace")


def object_name(obj: Any) -> str | None:
    return _field(_field(obj, "metadata"), "name")


def object_resource_version(obj: Any) -> str | None:
    return _field(_field(obj, "metadata"), "resourceVersion", "resource_version")


def object_key(obj: Any) -> str:
    """Return the ``namespace/name`` cache key (just ``name`` for cluster-scoped objects)."""
    name = object_name(obj)
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = object_namespace(obj)
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> tuple[str | None, str]:
    namespace, separator, name = key.partition("/")
    if not separator:
        return None, key
    return namespace, name


class Store:
    """Thread-safe object cache keyed by :func:`object_key`."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def upsert(self, obj: Any) -> Any:
        """Insert or replace *obj*; return the previously cached object, if any."""
        key = object_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any:
        with self._lock:
            return self._items.pop(object_key(obj), None)

    def get(self, key: str) -> Any:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def replace(self, objs: list[Any]) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Swap in a fresh listing and return ``(added, updated, deleted)``."""
        fresh = {object_key(obj): obj for obj in objs}
        with self._lock:
            previous = self._items
            self._items = fresh
        added = [obj for key, obj in fresh.items() if key not in previous]
        updated = [(previous[key], obj) for key, obj in fresh.items() if key in previous]
        deleted = [obj for key, obj in previous.items() if key not in fresh]
        return added, updated, deleted


class Lister:
    """Read-only accessor into an informer's cache."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def list(self, namespace: str | None = None) -> list[Any]:
        objs = self._store.list()
        if namespace is None:
            return objs
        return [obj for obj in objs if object_namespace(obj) == namespace]

    def get(self, namespace: str | None, name: str) -> Any:
        key = f"{namespace}/{name}" if namespace else name
        obj = self._store.get(key)
        if obj is None:
            raise NotFoundError(f"{key} not found in cache")
        return obj


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks invoked for cache changes; any of them may be omitted."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class SharedInformer:
    """List-then-watch cache for one resource kind.

    The background loop:

    1. Lists every object, replaces the cache and marks the informer synced.
    2. Watches from the list's ``resourceVersion``, applying each event to
       the cache and notifying registered handlers.
    3. Every ``resync_seconds`` re-delivers an update for every cached object
       so handlers get a periodic chance to reconcile.
    4. On ``410 Gone`` re-lists and emits the difference as add/update/delete.
    5. On transient errors backs off exponentially with jitter (capped at
       30 s).  ``401``/``403`` stop the loop and set :meth:`fatal_error`.

    Handlers must all be registered before :meth:`start`.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_func: Callable[..., Any],
        resync_seconds: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.resync_seconds = resync_seconds
        self.logger = logger or LOGGER
        self._list_func = list_func
        self._store = Store()
        self._handlers: list[ResourceEventHandler] = []
        self._state_lock = threading.Lock()
        self._started = False
        self._synced = threading.Event()
        self._fatal_error: str | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        with self._state_lock:
            if self._started:
                raise InformerError(
                    f"cannot register an event handler for {self.kind.name} after the informer started"
                )
            self._handlers.append(handler)

    def lister(self) -> Lister:
        return Lister(self._store)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def fatal_error(self) -> str | None:
        """Why the informer stopped for good, or None while it is still running."""
        return self._fatal_error

    def start(self, stop_event: threading.Event) -> threading.Thread:
        with self._state_lock:
            if self._started:
                raise InformerError(f"informer for {self.kind.name} already started")
            self._started = True
        thread = threading.Thread(
            target=self.run,
            args=(stop_event,),
            name=f"informer-{self.kind.name}",
            daemon=True,
        )
        thread.start()
        return thread

    def stop_watch(self) -> None:
        """Interrupt the open watch stream, if any."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _dispatch_add(self, obj: Any) -> None:
        for handler in self._handlers:
            if handler.on_add is None:
                continue
            try:
                handler.on_add(obj)
            except Exception:
                self.logger.exception("Add handler for %s failed", self.kind.name)

    def _dispatch_update(self, old: Any, new: Any) -> None:
        for handler in self._handlers:
            if handler.on_update is None:
                continue
            try:
                handler.on_update(old, new)
            except Exception:
                self.logger.exception("Update handler for %s failed", self.kind.name)

    def _dispatch_delete(self, obj: Any) -> None:
        for handler in self._handlers:
            if handler.on_delete is None:
                continue
            try:
                handler.on_delete(obj)
            except Exception:
                self.logger.exception("Delete handler for %s failed", self.kind.name)

    def _list_and_replace(self) -> str | None:
        result = self._list_func()
        items = _field(result, "items") or []
        added, updated, deleted = self._store.replace(list(items))
        for obj in added:
            self._dispatch_add(obj)
        for old, new in updated:
            self._dispatch_update(old, new)
        for obj in deleted:
            self._dispatch_delete(obj)
        return _field(_field(result, "metadata"), "resourceVersion", "resource_version")

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the cache and notify handlers."""
        if event_type in {"ADDED", "MODIFIED"}:
            previous = self._store.upsert(obj)
            if previous is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(previous, obj)
        elif event_type == "DELETED":
            self._store.delete(obj)
            self._dispatch_delete(obj)

    def resync(self) -> None:
        for obj in self._store.list():
            self._dispatch_update(obj, obj)

    def _next_watch_timeout_seconds(self, last_resync: float) -> int:
        remaining = self.resync_seconds - (time.monotonic() - last_resync)
        return max(1, math.ceil(remaining))

    def _backoff(self, stop_event: threading.Event, backoff_seconds: int) -> int:
        METRICS.informer_watch_errors_total.labels(resource=self.kind.name).inc()
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop_event: threading.Event) -> None:
        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1
        last_resync = time.monotonic()

        while not stop_event.is_set():
            if needs_list:
                try:
                    resource_version = self._list_and_replace()
                    needs_list = False
                    backoff_seconds = 1
                    if not self._synced.is_set():
                        self._synced.set()
                        self.logger.info(
                            "Cache for %s synced at resourceVersion %s",
                            self.kind.name,
                            resource_version,
                        )
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied listing %s (status=%s). "
                            "Check operator RBAC and service account permissions.",
                            self.kind.name,
                            exc.status,
                        )
                        self._fatal_error = f"list of {self.kind.name} denied (status={exc.status})"
                        return
                    self.logger.exception("Failed to list %s", self.kind.name)
                    backoff_seconds = self._backoff(stop_event, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", self.kind.name)
                    backoff_seconds = self._backoff(stop_event, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    self._list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(last_resync),
                )
                for event in stream:
                    if stop_event.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if obj is None:
                        continue
                    if event_type == "ERROR":
                        raise ApiException(
                            status=_field(obj, "code"), reason=_field(obj, "message")
                        )
                    observed_version = object_resource_version(obj)
                    if observed_version:
                        resource_version = observed_version
                    self.handle_event(event_type, obj)

                backoff_seconds = 1
                if time.monotonic() - last_resync >= self.resync_seconds:
                    self.resync()
                    last_resync = time.monotonic()
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version for %s expired, re-listing", self.kind.name
                    )
                    METRICS.informer_relists_total.labels(resource=self.kind.name).inc()
                    needs_list = True
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.kind.name,
                        exc.status,
                    )
                    self._fatal_error = f"watch on {self.kind.name} denied (status={exc.status})"
                    return
                self.logger.exception("Kubernetes API watch error on %s", self.kind.name)
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.kind.name)
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("Informer for %s stopped", self.kind.name)


class SharedInformerFactory:
    """Creates and starts informers that share one client family and resync period.

    Every :meth:`informer_for` call and every handler registration must
    happen before :meth:`start`; the factory refuses both afterwards so a
    late consumer cannot miss the initial list.
    """

    def __init__(self, client: Any, resync_seconds: int, *, name: str) -> None:
        if resync_seconds < 1:
            raise ValueError("resync_seconds must be >= 1")
        self.client = client
        self.resync_seconds = resync_seconds
        self.name = name
        self._informers: dict[str, SharedInformer] = {}
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def informer_for(self, kind: ResourceKind) -> SharedInformer:
        with self._lock:
            if self._started:
                raise InformerError(
                    f"cannot register {kind.name} with the {self.name} informer factory after start"
                )
            informer = self._informers.get(kind.name)
            if informer is None:
                informer = SharedInformer(
                    kind=kind,
                    list_func=kind.list_function(self.client),
                    resync_seconds=self.resync_seconds,
                )
                self._informers[kind.name] = informer
            return informer

    def start(self, stop_event: threading.Event) -> None:
        """Launch one background thread per registered informer; non-blocking."""
        with self._lock:
            if self._started:
                raise InformerError(f"{self.name} informer factory already started")
            self._started = True
            informers = list(self._informers.values())
        for informer in informers:
            self._threads.append(informer.start(stop_event))
        LOGGER.info(
            "Started %s informer factory with %d informer(s), resync every %ds",
            self.name,
            len(informers),
            self.resync_seconds,
        )

    def has_synced(self) -> bool:
        return all(informer.has_synced() for informer in list(self._informers.values()))

    def wait_for_cache_sync(
        self, stop_event: threading.Event, timeout: float | None = None
    ) -> dict[str, bool]:
        """Block until every registered informer has synced; return per-kind results."""
        informers = list(self._informers.values())
        wait_for_cache_sync(
            stop_event, *(informer.has_synced for informer in informers), timeout=timeout
        )
        return {informer.kind.name: informer.has_synced() for informer in informers}

    def fatal_errors(self) -> dict[str, str]:
        """Map each informer that stopped for good to the reason it stopped."""
        errors = {}
        for name, informer in list(self._informers.items()):
            error = informer.fatal_error()
            if error is not None:
                errors[name] = error
        return errors

    def shutdown(self, timeout: float | None = None) -> None:
        """Interrupt open watches and join informer threads.

        *timeout* bounds the whole join, not each thread.  The stop event
        passed to :meth:`start` must already be set.
        """
        for informer in list(self._informers.values()):
            informer.stop_watch()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
            if thread.is_alive():
                LOGGER.warning("Informer thread %s did not stop within %ss", thread.name, timeout)


def wait_for_cache_sync(
    stop_event: threading.Event,
    *synced: Callable[[], bool],
    timeout: float | None = None,
    poll_interval: float = 0.1,
) -> bool:
    """Poll every ``synced`` predicate until all are true.

    Returns False if *stop_event* fires or *timeout* elapses first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while not all(check() for check in synced):
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval)
    return True


def new_kube_informer_factory(kube_client: KubeClient, resync_seconds: int) -> SharedInformerFactory:
    return SharedInformerFactory(kube_client, resync_seconds, name="kubernetes")


def new_openebs_informer_factory(
    openebs_client: CustomResourceClient, resync_seconds: int
) -> SharedInformerFactory:
    return SharedInformerFactory(openebs_client, resync_seconds, name="openebs")
