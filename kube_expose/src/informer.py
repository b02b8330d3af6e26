from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api

from kube_expose.src.exposure import WorkloadSnapshot, snapshot_from_deployment, workload_key
from kube_expose.src.metrics import METRICS

SnapshotHandler = Callable[[WorkloadSnapshot], None]


@dataclass(frozen=True)
class EventHandlers:
    on_add: SnapshotHandler | None = None
    on_update: SnapshotHandler | None = None
    on_delete: SnapshotHandler | None = None


class DeploymentInformer:
    """Keeps a local cache of Deployments in sync with the API server.

    The informer lists Deployments once, marks itself synced, then streams
    watch events from the list's ``resourceVersion``.  Every change updates the
    cache first and then notifies the registered handlers with the affected
    :class:`WorkloadSnapshot`, so a handler that reads the cache back always
    sees at least the state it was notified about.

    The cache is written only from the :meth:`run_forever` thread.  Readers use
    :meth:`get` and :meth:`keys`, which copy under ``_cache_lock``.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
        watch_timeout_seconds: int = 300,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace or None
        self.logger = logger or logging.getLogger(__name__)
        self.watch_timeout_seconds = watch_timeout_seconds

        self.ready = threading.Event()
        self._cache: dict[str, WorkloadSnapshot] = {}
        self._cache_lock = threading.Lock()
        self._handlers: list[EventHandlers] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: SnapshotHandler | None = None,
        on_update: SnapshotHandler | None = None,
        on_delete: SnapshotHandler | None = None,
    ) -> None:
        self._handlers.append(
            EventHandlers(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def has_synced(self) -> bool:
        return self.ready.is_set()

    def get(self, namespace: str, name: str) -> WorkloadSnapshot | None:
        with self._cache_lock:
            return self._cache.get(workload_key(namespace, name))

    def keys(self) -> list[str]:
        with self._cache_lock:
            return sorted(self._cache)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace:
            return self.apps_api.list_namespaced_deployment
        return self.apps_api.list_deployment_for_all_namespaces

    def _list_kwargs(self) -> dict[str, Any]:
        if self.namespace:
            return {"namespace": self.namespace}
        return {}

    def _dispatch(self, kind: str, snapshot: WorkloadSnapshot) -> None:
        for handlers in self._handlers:
            handler = getattr(handlers, f"on_{kind}")
            if handler is None:
                continue
            try:
                handler(snapshot)
            except Exception:
                self.logger.exception(
                    "Event handler failed for %s notification of %s", kind, snapshot.key
                )

    def _store(self, snapshot: WorkloadSnapshot) -> bool:
        """Insert or replace a snapshot; return True if the key was new."""
        with self._cache_lock:
            is_new = snapshot.key not in self._cache
            self._cache[snapshot.key] = snapshot
            METRICS.cached_workloads.set(len(self._cache))
        return is_new

    def _remove(self, snapshot: WorkloadSnapshot) -> WorkloadSnapshot:
        with self._cache_lock:
            removed = self._cache.pop(snapshot.key, None)
            METRICS.cached_workloads.set(len(self._cache))
        return removed or snapshot

    def _replace_cache(self, deployments: Any) -> None:
        """Replace the cache with a full listing and notify handlers of the differences.

        Called for the initial list and after a ``410 Gone`` re-list.  Keys that
        disappeared while the watch was down are reported as deletes, new keys
        as adds, and keys present in both as updates.
        """
        items = getattr(deployments, "items", None) or []
        fresh: dict[str, WorkloadSnapshot] = {}
        for deployment in items:
            snapshot = snapshot_from_deployment(deployment)
            if snapshot is None:
                self.logger.warning("Skipping Deployment with missing metadata.name")
                continue
            fresh[snapshot.key] = snapshot

        with self._cache_lock:
            previous = self._cache
            self._cache = dict(fresh)
            METRICS.cached_workloads.set(len(self._cache))

        for key, snapshot in previous.items():
            if key not in fresh:
                self._dispatch("delete", snapshot)
        for key, snapshot in fresh.items():
            self._dispatch("update" if key in previous else "add", snapshot)

    def handle_event(self, event_type: str, deployment: Any) -> None:
        """Apply one watch event to the cache and notify handlers."""
        snapshot = snapshot_from_deployment(deployment)
        if snapshot is None:
            return

        if event_type == "DELETED":
            self._dispatch("delete", self._remove(snapshot))
        elif event_type in {"ADDED", "MODIFIED"}:
            is_new = self._store(snapshot)
            self._dispatch("add" if is_new else "update", snapshot)

    def _backoff_wait(self, stop: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def _access_denied(self, phase: str, status: int | None) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            status,
        )
        self.ready.clear()

    def _list_into_cache(self) -> str | None:
        listing = self._list_func()(**self._list_kwargs())
        resource_version = getattr(
            getattr(listing, "metadata", None), "resource_version", None
        )
        self._replace_cache(listing)
        return resource_version

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch Deployments until shutdown.

        1. Lists Deployments, replaces the cache, notifies handlers of the
           differences and sets :attr:`ready`.
        2. Streams watch events from the list's ``resourceVersion``.
        3. On ``410 Gone``, goes back to step 1 before opening another watch.
        4. Failed lists and watch errors back off with jitter (1 s doubling
           to 30 s).

        A watch is never opened without a ``resourceVersion`` from a
        successful list, so a Deployment deleted while no watch was open is
        always reported as a delete by the next list.

        ``401`` / ``403`` are treated as RBAC/auth misconfiguration and end
        the loop with :attr:`ready` cleared instead of retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        needs_list = True
        list_phase = "initial list"
        list_backoff_seconds: float = 1
        watch_backoff_seconds: float = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                try:
                    resource_version = self._list_into_cache()
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._access_denied(list_phase, exc.status)
                        return
                    self.logger.exception("Deployment %s failed", list_phase)
                    METRICS.watch_errors_total.inc()
                    list_backoff_seconds = self._backoff_wait(stop, list_backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error during Deployment %s", list_phase)
                    METRICS.watch_errors_total.inc()
                    list_backoff_seconds = self._backoff_wait(stop, list_backoff_seconds)
                    continue

                needs_list = False
                list_backoff_seconds = 1
                self.ready.set()
                self.logger.info(
                    "Deployment cache synced with %d item(s); watching from resourceVersion %s",
                    len(self.keys()),
                    resource_version,
                )
                if self._should_stop(stop):
                    break

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func(),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), deployment=obj)

                watch_backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    needs_list = True
                    list_phase = "re-list after 410"
                    continue

                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.inc()
                    self._access_denied("watch", exc.status)
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                watch_backoff_seconds = self._backoff_wait(stop, watch_backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                watch_backoff_seconds = self._backoff_wait(stop, watch_backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
