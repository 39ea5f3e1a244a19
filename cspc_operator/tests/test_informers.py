from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from cspc_operator.src.informers import (
    CSPC_KIND,
    InformerError,
    Lister,
    NotFoundError,
    ResourceEventHandler,
    ResourceKind,
    SharedInformer,
    SharedInformerFactory,
    Store,
    new_kube_informer_factory,
    new_openebs_informer_factory,
    object_key,
    split_key,
    wait_for_cache_sync,
)


def make_cspc(name: str, namespace: str = "openebs", resource_version: str = "1") -> dict[str, Any]:
    return {
        "apiVersion": "openebs.io/v1alpha1",
        "kind": "CStorPoolCluster",
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
        "spec": {"pools": []},
    }


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def as_handler(self) -> ResourceEventHandler:
        return ResourceEventHandler(
            on_add=lambda obj: self.events.append(("add", object_key(obj))),
            on_update=lambda old, new: self.events.append(("update", object_key(new))),
            on_delete=lambda obj: self.events.append(("delete", object_key(obj))),
        )


def fake_list(*listings: list[dict[str, Any]], versions: list[str] | None = None) -> MagicMock:
    """Return a list callable yielding each listing in turn (the last one repeats)."""
    resource_versions = versions or [str(index + 100) for index in range(len(listings))]
    call_count = 0

    def _list(**kwargs: Any) -> dict[str, Any]:
        nonlocal call_count
        index = min(call_count, len(listings) - 1)
        call_count += 1
        return {"metadata": {"resourceVersion": resource_versions[index]}, "items": listings[index]}

    return MagicMock(side_effect=_list)


class BlockingWatch:
    """Watch stand-in whose streams stay open briefly and never yield events."""

    def __init__(self) -> None:
        self._stopped = threading.Event()

    def stream(self, func: Any, **kwargs: Any) -> Any:
        self._stopped.wait(timeout=0.05)
        return iter([])

    def stop(self) -> None:
        self._stopped.set()


def _informer(list_func: Any, resync_seconds: int = 30) -> SharedInformer:
    kind = ResourceKind(name="cstorpoolclusters", list_function=lambda client: list_func)
    return SharedInformer(kind=kind, list_func=list_func, resync_seconds=resync_seconds)


class TestKeysAndStore:
    def test_object_key_for_dict_and_model(self) -> None:
        assert object_key(make_cspc("cspc-a")) == "openebs/cspc-a"
        model = SimpleNamespace(metadata=SimpleNamespace(name="node-1", namespace=None))
        assert object_key(model) == "node-1"

    def test_object_key_requires_name(self) -> None:
        with pytest.raises(ValueError):
            object_key({"metadata": {}})

    def test_split_key(self) -> None:
        assert split_key("openebs/cspc-a") == ("openebs", "cspc-a")
        assert split_key("node-1") == (None, "node-1")

    def test_replace_reports_difference(self) -> None:
        store = Store()
        store.replace([make_cspc("a"), make_cspc("b")])

        added, updated, deleted = store.replace([make_cspc("b", resource_version="2"), make_cspc("c")])

        assert [object_key(obj) for obj in added] == ["openebs/c"]
        assert [object_key(new) for _, new in updated] == ["openebs/b"]
        assert [object_key(obj) for obj in deleted] == ["openebs/a"]

    def test_lister_get_and_list(self) -> None:
        store = Store()
        store.replace([make_cspc("a"), make_cspc("b", namespace="other")])
        lister = Lister(store)

        assert lister.get("openebs", "a")["metadata"]["name"] == "a"
        assert len(lister.list()) == 2
        assert [obj["metadata"]["name"] for obj in lister.list(namespace="other")] == ["b"]
        with pytest.raises(NotFoundError):
            lister.get("openebs", "missing")


class TestSharedInformer:
    def test_handle_event_dispatches_add_update_delete(self) -> None:
        informer = _informer(fake_list([]))
        recorder = RecordingHandler()
        informer.add_event_handler(recorder.as_handler())

        informer.handle_event("ADDED", make_cspc("a"))
        informer.handle_event("MODIFIED", make_cspc("a", resource_version="2"))
        informer.handle_event("MODIFIED", make_cspc("b"))
        informer.handle_event("DELETED", make_cspc("a"))
        informer.handle_event("BOOKMARK", make_cspc("c"))

        assert recorder.events == [
            ("add", "openebs/a"),
            ("update", "openebs/a"),
            ("add", "openebs/b"),
            ("delete", "openebs/a"),
        ]
        assert [object_key(obj) for obj in informer.lister().list()] == ["openebs/b"]

    def test_handler_failure_does_not_stop_other_handlers(self) -> None:
        informer = _informer(fake_list([]))
        recorder = RecordingHandler()
        informer.add_event_handler(ResourceEventHandler(on_add=MagicMock(side_effect=RuntimeError)))
        informer.add_event_handler(recorder.as_handler())

        informer.handle_event("ADDED", make_cspc("a"))

        assert recorder.events == [("add", "openebs/a")]

    def test_resync_redelivers_updates(self) -> None:
        informer = _informer(fake_list([]))
        recorder = RecordingHandler()
        informer.add_event_handler(recorder.as_handler())
        informer.handle_event("ADDED", make_cspc("a"))

        informer.resync()

        assert recorder.events == [("add", "openebs/a"), ("update", "openebs/a")]

    def test_run_lists_syncs_then_watches_from_resource_version(self) -> None:
        list_func = fake_list([make_cspc("a")], versions=["100"])
        informer = _informer(list_func)
        recorder = RecordingHandler()
        informer.add_event_handler(recorder.as_handler())

        stop_event = threading.Event()
        mock_watcher = MagicMock()
        call_count = 0

        def patched_stream(*args: Any, **kwargs: Any) -> Any:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                return iter([{"type": "ADDED", "object": make_cspc("b", resource_version="101")}])
            stop_event.set()
            return iter([])

        mock_watcher.stream.side_effect = patched_stream

        with patch("cspc_operator.src.informers.watch.Watch", return_value=mock_watcher):
            informer.run(stop_event)

        assert informer.has_synced()
        assert recorder.events == [("add", "openebs/a"), ("add", "openebs/b")]
        first_call, second_call = mock_watcher.stream.call_args_list
        assert first_call.args[0] is list_func
        assert first_call.kwargs["resource_version"] == "100"
        assert second_call.kwargs["resource_version"] == "101"
        assert 1 <= first_call.kwargs["timeout_seconds"] <= 30
        assert mock_watcher.stop.call_count >= 2

    def test_run_relists_after_gone_and_emits_difference(self) -> None:
        list_func = fake_list(
            [make_cspc("a"), make_cspc("b")],
            [make_cspc("b", resource_version="7"), make_cspc("c")],
        )
        informer = _informer(list_func)
        recorder = RecordingHandler()
        informer.add_event_handler(recorder.as_handler())

        stop_event = threading.Event()
        mock_watcher = MagicMock()
        call_count = 0

        def patched_stream(*args: Any, **kwargs: Any) -> Any:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise ApiException(status=410, reason="Gone")
            stop_event.set()
            return iter([])

        mock_watcher.stream.side_effect = patched_stream

        with patch("cspc_operator.src.informers.watch.Watch", return_value=mock_watcher):
            informer.run(stop_event)

        assert list_func.call_count == 2
        assert recorder.events[2:] == [
            ("add", "openebs/c"),
            ("update", "openebs/b"),
            ("delete", "openebs/a"),
        ]

    def test_run_treats_error_event_with_gone_code_as_relist(self) -> None:
        list_func = fake_list([], [])
        informer = _informer(list_func)
        stop_event = threading.Event()
        mock_watcher = MagicMock()
        call_count = 0

        def patched_stream(*args: Any, **kwargs: Any) -> Any:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                return iter([{"type": "ERROR", "object": {"code": 410, "message": "too old"}}])
            stop_event.set()
            return iter([])

        mock_watcher.stream.side_effect = patched_stream

        with patch("cspc_operator.src.informers.watch.Watch", return_value=mock_watcher):
            informer.run(stop_event)

        assert list_func.call_count == 2

    def test_run_exits_on_forbidden_list(self) -> None:
        list_func = MagicMock(side_effect=ApiException(status=403, reason="Forbidden"))
        informer = _informer(list_func)
        watch_factory = MagicMock()

        with patch("cspc_operator.src.informers.watch.Watch", watch_factory):
            informer.run(threading.Event())

        watch_factory.assert_not_called()
        assert not informer.has_synced()
        assert informer.fatal_error() == "list of cstorpoolclusters denied (status=403)"

    def test_run_records_fatal_error_on_denied_watch(self) -> None:
        informer = _informer(fake_list([make_cspc("a")]))
        mock_watcher = MagicMock()
        mock_watcher.stream.side_effect = ApiException(status=401, reason="Unauthorized")

        with patch("cspc_operator.src.informers.watch.Watch", return_value=mock_watcher):
            informer.run(threading.Event())

        assert informer.has_synced()
        assert informer.fatal_error() == "watch on cstorpoolclusters denied (status=401)"
        mock_watcher.stop.assert_called_once()

    def test_transient_failure_leaves_no_fatal_error(self) -> None:
        informer = _informer(fake_list([]))
        stop_event = threading.Event()
        mock_watcher = MagicMock()

        def failing_stream(*args: Any, **kwargs: Any) -> Any:
            stop_event.set()
            raise ApiException(status=500, reason="boom")

        mock_watcher.stream.side_effect = failing_stream

        with patch("cspc_operator.src.informers.watch.Watch", return_value=mock_watcher):
            informer.run(stop_event)

        assert informer.fatal_error() is None

    def test_run_retries_transient_list_failure(self) -> None:
        responses: list[Any] = [ApiException(status=500, reason="boom")]
        stop_event = threading.Event()

        def _list(**kwargs: Any) -> dict[str, Any]:
            if responses:
                raise responses.pop()
            stop_event.set()
            return {"metadata": {"resourceVersion": "1"}, "items": []}

        informer = _informer(MagicMock(side_effect=_list))

        with (
            patch("cspc_operator.src.informers.random.random", return_value=0.0),
            patch("cspc_operator.src.informers.watch.Watch", MagicMock()),
        ):
            informer.run(stop_event)

        assert informer.has_synced()

    def test_handlers_cannot_be_added_after_start(self) -> None:
        informer = _informer(fake_list([]))
        stop_event = threading.Event()
        stop_event.set()

        thread = informer.start(stop_event)
        thread.join(timeout=2)

        with pytest.raises(InformerError, match="after the informer started"):
            informer.add_event_handler(ResourceEventHandler())
        with pytest.raises(InformerError, match="already started"):
            informer.start(stop_event)


class TestSharedInformerFactory:
    def test_informer_for_is_shared_per_kind(self) -> None:
        openebs_client = MagicMock()
        factory = new_openebs_informer_factory(openebs_client, 30)

        first = factory.informer_for(CSPC_KIND)
        second = factory.informer_for(CSPC_KIND)

        assert first is second
        assert first.resync_seconds == 30
        openebs_client.list_function.assert_called_once_with("cstorpoolclusters")

    def test_registration_after_start_is_rejected(self) -> None:
        factory = new_openebs_informer_factory(MagicMock(), 30)
        stop_event = threading.Event()
        stop_event.set()
        factory.start(stop_event)

        with pytest.raises(InformerError, match="after start"):
            factory.informer_for(CSPC_KIND)
        factory.shutdown(timeout=2)

    def test_start_twice_is_rejected(self) -> None:
        factory = new_kube_informer_factory(MagicMock(), 30)
        stop_event = threading.Event()
        factory.start(stop_event)

        assert factory.started
        with pytest.raises(InformerError, match="already started"):
            factory.start(stop_event)

    def test_rejects_non_positive_resync(self) -> None:
        with pytest.raises(ValueError):
            SharedInformerFactory(MagicMock(), 0, name="openebs")

    def test_start_launches_informers_and_shutdown_joins_them(self) -> None:
        client = MagicMock()
        client.list_function.return_value = fake_list([make_cspc("a")])
        factory = new_openebs_informer_factory(client, 30)
        informer = factory.informer_for(CSPC_KIND)
        stop_event = threading.Event()

        with patch("cspc_operator.src.informers.watch.Watch", BlockingWatch):
            factory.start(stop_event)
            assert wait_for_cache_sync(stop_event, informer.has_synced, timeout=2)
            stop_event.set()
            factory.shutdown(timeout=2)

        assert informer.lister().get("openebs", "a")["metadata"]["name"] == "a"
        assert all(not thread.is_alive() for thread in factory._threads)

    def test_factory_wait_for_cache_sync_reports_each_kind(self) -> None:
        client = MagicMock()
        client.list_function.return_value = fake_list([make_cspc("a")])
        factory = new_openebs_informer_factory(client, 30)
        factory.informer_for(CSPC_KIND)
        stop_event = threading.Event()
        assert not factory.has_synced()

        with patch("cspc_operator.src.informers.watch.Watch", BlockingWatch):
            factory.start(stop_event)
            result = factory.wait_for_cache_sync(stop_event, timeout=2)
            stop_event.set()
            factory.shutdown(timeout=2)

        assert result == {"cstorpoolclusters": True}
        assert factory.has_synced()

    def test_factory_wait_for_cache_sync_times_out(self) -> None:
        client = MagicMock()
        client.list_function.return_value = MagicMock(
            side_effect=ApiException(status=403, reason="Forbidden")
        )
        factory = new_openebs_informer_factory(client, 30)
        factory.informer_for(CSPC_KIND)
        stop_event = threading.Event()

        factory.start(stop_event)
        result = factory.wait_for_cache_sync(stop_event, timeout=0.3)
        stop_event.set()
        factory.shutdown(timeout=2)

        assert result == {"cstorpoolclusters": False}


class TestWaitForCacheSync:
    def test_returns_true_when_all_synced(self) -> None:
        assert wait_for_cache_sync(threading.Event(), lambda: True, lambda: True)

    def test_returns_false_on_timeout(self) -> None:
        started = time.monotonic()

        assert not wait_for_cache_sync(
            threading.Event(), lambda: False, timeout=0.2, poll_interval=0.05
        )
        assert time.monotonic() - started < 2

    def test_returns_false_when_stopped(self) -> None:
        stop_event = threading.Event()
        stop_event.set()

        assert not wait_for_cache_sync(stop_event, lambda: False)


class StuckThread:
    """Thread stand-in that never finishes and records each join timeout."""

    def __init__(self, name: str, timeouts: list[float | None]) -> None:
        self.name = name
        self._timeouts = timeouts

    def join(self, timeout: float | None = None) -> None:
        self._timeouts.append(timeout)
        time.sleep(timeout or 0)

    def is_alive(self) -> bool:
        return True


def test_factory_shutdown_shares_one_deadline_across_threads() -> None:
    factory = new_openebs_informer_factory(MagicMock(), 30)
    timeouts: list[float | None] = []
    factory._threads = [StuckThread(f"informer-{index}", timeouts) for index in range(3)]

    started = time.monotonic()
    factory.shutdown(timeout=0.2)

    assert time.monotonic() - started < 0.5
    assert len(timeouts) == 3
    assert timeouts[0] == pytest.approx(0.2, abs=0.05)
    assert all(timeout is not None and timeout < 0.05 for timeout in timeouts[1:])
