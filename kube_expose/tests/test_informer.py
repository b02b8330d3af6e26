from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError

from kube_expose.src.exposure import WorkloadSnapshot
from kube_expose.src.informer import DeploymentInformer


def make_deployment(
    name: str,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    resource_version: str = "1",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, namespace=namespace, resource_version=resource_version
        ),
        spec=SimpleNamespace(
            template=SimpleNamespace(
                metadata=SimpleNamespace(labels=labels if labels is not None else {"app": name})
            )
        ),
    )


class FakeAppsApi:
    """Serves successive Deployment listings, one per list call."""

    def __init__(
        self,
        listings: list[list[SimpleNamespace]] | None = None,
        resource_versions: list[str] | None = None,
        errors: list[Exception | None] | None = None,
    ) -> None:
        self.listings = listings or [[]]
        self.resource_versions = resource_versions or ["100"]
        self.errors = list(errors or [])
        self.calls: list[dict[str, Any]] = []

    def _list(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        index = len(self.calls) - 1
        items = self.listings[min(index, len(self.listings) - 1)]
        version = self.resource_versions[min(index, len(self.resource_versions) - 1)]
        return SimpleNamespace(metadata=SimpleNamespace(resource_version=version), items=items)

    def list_deployment_for_all_namespaces(self, **kwargs: Any) -> SimpleNamespace:
        return self._list(**kwargs)

    def list_namespaced_deployment(self, **kwargs: Any) -> SimpleNamespace:
        return self._list(**kwargs)


class Recorder:
    def __init__(self, informer: DeploymentInformer) -> None:
        self.events: list[tuple[str, str]] = []
        informer.add_event_handler(
            on_add=lambda s: self.events.append(("add", s.key)),
            on_update=lambda s: self.events.append(("update", s.key)),
            on_delete=lambda s: self.events.append(("delete", s.key)),
        )


def _run_with_stream(
    informer: DeploymentInformer,
    streams: list[Any],
) -> tuple[MagicMock, list[dict[str, Any]]]:
    """Run the informer against scripted watch streams, stopping after the last one.

    Each entry in *streams* is either a list of events or an exception to raise.
    """
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    stream_kwargs: list[dict[str, Any]] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        stream_kwargs.append(kwargs)
        index = len(stream_kwargs) - 1
        if index >= len(streams):
            shutdown_event.set()
            return iter([])
        scripted = streams[index]
        if isinstance(scripted, Exception):
            raise scripted
        return iter(scripted)

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("kube_expose.src.informer.watch.Watch", return_value=mock_watcher),
        patch("kube_expose.src.informer.random.random", return_value=0.0),
    ):
        informer.run_forever(shutdown_event=shutdown_event)

    return mock_watcher, stream_kwargs


def test_initial_list_populates_cache_and_notifies_adds() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web"), make_deployment("api", "prod")]])
    informer = DeploymentInformer(apps_api=apps_api)
    recorder = Recorder(informer)
    synced_before_watch: list[bool] = []

    def first_stream_checks_sync() -> list[dict[str, Any]]:
        synced_before_watch.append(informer.has_synced())
        return []

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        first_stream_checks_sync()
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream
    with patch("kube_expose.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert synced_before_watch == [True]
    assert sorted(recorder.events) == [("add", "default/web"), ("add", "prod/api")]
    assert informer.keys() == ["default/web", "prod/api"]
    snapshot = informer.get("default", "web")
    assert snapshot is not None
    assert snapshot.template_labels == {"app": "web"}
    # Readiness is withdrawn once the loop exits.
    assert informer.has_synced() is False


def test_watch_events_update_cache_and_dispatch() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web")]])
    informer = DeploymentInformer(apps_api=apps_api)
    recorder = Recorder(informer)

    events = [
        {"type": "ADDED", "object": make_deployment("api", resource_version="101")},
        {
            "type": "MODIFIED",
            "object": make_deployment(
                "web", labels={"app": "web", "v": "2"}, resource_version="102"
            ),
        },
        {"type": "DELETED", "object": make_deployment("api", resource_version="103")},
        {"type": "BOOKMARK", "object": None},
    ]

    _, stream_kwargs = _run_with_stream(informer, [events])

    assert recorder.events == [
        ("add", "default/web"),
        ("add", "default/api"),
        ("update", "default/web"),
        ("delete", "default/api"),
    ]
    assert informer.keys() == ["default/web"]
    snapshot = informer.get("default", "web")
    assert snapshot is not None
    assert snapshot.template_labels == {"app": "web", "v": "2"}
    assert stream_kwargs[0]["resource_version"] == "100"
    assert stream_kwargs[1]["resource_version"] == "103"


def test_added_event_for_cached_key_is_update() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web")]])
    informer = DeploymentInformer(apps_api=apps_api)
    recorder = Recorder(informer)

    _run_with_stream(informer, [[{"type": "ADDED", "object": make_deployment("web")}]])

    assert recorder.events == [("add", "default/web"), ("update", "default/web")]


def test_namespaced_informer_uses_namespaced_list() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web", "team-a")]])
    informer = DeploymentInformer(apps_api=apps_api, namespace="team-a")

    _, stream_kwargs = _run_with_stream(informer, [])

    assert apps_api.calls[0] == {"namespace": "team-a"}
    assert stream_kwargs[0]["namespace"] == "team-a"


def test_relist_after_410_reports_differences() -> None:
    apps_api = FakeAppsApi(
        listings=[
            [make_deployment("web"), make_deployment("old")],
            [make_deployment("web"), make_deployment("new")],
        ],
        resource_versions=["100", "200"],
    )
    informer = DeploymentInformer(apps_api=apps_api)
    recorder = Recorder(informer)

    _, stream_kwargs = _run_with_stream(informer, [ApiException(status=410, reason="Gone")])

    assert recorder.events[2:] == [
        ("delete", "default/old"),
        ("update", "default/web"),
        ("add", "default/new"),
    ]
    assert informer.keys() == ["default/new", "default/web"]
    assert stream_kwargs[0]["resource_version"] == "100"
    assert stream_kwargs[1]["resource_version"] == "200"


def _assert_failed_relist_is_retried_before_watching(relist_error: Exception) -> None:
    apps_api = FakeAppsApi(
        listings=[
            [make_deployment("web"), make_deployment("old")],
            [],
            [make_deployment("web")],
        ],
        resource_versions=["100", "", "300"],
        errors=[None, relist_error],
    )
    informer = DeploymentInformer(apps_api=apps_api)
    recorder = Recorder(informer)

    with patch(
        "kube_expose.src.informer.DeploymentInformer._backoff_wait", return_value=2
    ) as mock_backoff:
        _, stream_kwargs = _run_with_stream(
            informer, [ApiException(status=410, reason="Gone")]
        )

    assert len(apps_api.calls) == 3
    mock_backoff.assert_called_once()
    assert recorder.events[2:] == [("delete", "default/old"), ("update", "default/web")]
    assert informer.keys() == ["default/web"]
    assert [kwargs["resource_version"] for kwargs in stream_kwargs] == ["100", "300"]


def test_failed_relist_after_410_retries_list_and_reports_deletes() -> None:
    _assert_failed_relist_is_retried_before_watching(ApiException(status=500, reason="boom"))


def test_transport_error_during_relist_does_not_end_informer() -> None:
    _assert_failed_relist_is_retried_before_watching(
        MaxRetryError(None, "/apis/apps/v1/deployments", reason=None)  # type: ignore[arg-type]
    )


def test_initial_list_retries_transient_errors() -> None:
    apps_api = FakeAppsApi(
        listings=[[make_deployment("web")]],
        errors=[ApiException(status=500, reason="boom")],
    )
    informer = DeploymentInformer(apps_api=apps_api)

    with patch(
        "kube_expose.src.informer.DeploymentInformer._backoff_wait", return_value=2
    ) as mock_backoff:
        _run_with_stream(informer, [])

    assert len(apps_api.calls) == 2
    mock_backoff.assert_called_once()
    assert informer.keys() == ["default/web"]


def test_initial_list_rbac_denied_returns_without_sync() -> None:
    apps_api = FakeAppsApi(errors=[ApiException(status=403, reason="Forbidden")])
    informer = DeploymentInformer(apps_api=apps_api)

    informer.run_forever(shutdown_event=threading.Event())

    assert informer.has_synced() is False
    assert len(apps_api.calls) == 1


def test_watch_rbac_denied_clears_readiness() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web")]])
    informer = DeploymentInformer(apps_api=apps_api)

    mock_watcher, stream_kwargs = _run_with_stream(
        informer, [ApiException(status=401, reason="Unauthorized")]
    )

    assert len(stream_kwargs) == 1
    assert informer.has_synced() is False
    assert mock_watcher.stop.call_count >= 1


def test_watch_error_backs_off_and_reconnects() -> None:
    apps_api = FakeAppsApi(listings=[[make_deployment("web")]])
    informer = DeploymentInformer(apps_api=apps_api)
    waits: list[float] = []

    with patch(
        "kube_expose.src.informer.DeploymentInformer._backoff_wait",
        side_effect=lambda stop, backoff: waits.append(backoff) or min(backoff * 2, 30),
    ):
        _, stream_kwargs = _run_with_stream(
            informer,
            [ApiException(status=500, reason="boom"), RuntimeError("socket closed")],
        )

    assert waits == [1, 2]
    assert len(stream_kwargs) == 3


def test_handler_exception_does_not_break_dispatch() -> None:
    informer = DeploymentInformer(apps_api=FakeAppsApi())
    seen: list[str] = []

    def broken(snapshot: WorkloadSnapshot) -> None:
        raise RuntimeError("handler bug")

    informer.add_event_handler(on_add=broken)
    informer.add_event_handler(on_add=lambda s: seen.append(s.key))

    informer.handle_event("ADDED", make_deployment("web"))

    assert seen == ["default/web"]
    assert informer.keys() == ["default/web"]


def test_event_without_name_is_ignored() -> None:
    informer = DeploymentInformer(apps_api=FakeAppsApi())
    recorder = Recorder(informer)

    informer.handle_event("ADDED", SimpleNamespace(metadata=SimpleNamespace(name=None)))

    assert recorder.events == []
    assert informer.keys() == []


def test_request_stop_interrupts_active_watch() -> None:
    informer = DeploymentInformer(apps_api=FakeAppsApi())
    mock_watcher = MagicMock()
    informer._active_watcher = mock_watcher

    informer.request_stop()

    mock_watcher.stop.assert_called_once()
