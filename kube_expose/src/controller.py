from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api
from urllib3.exceptions import HTTPError

from kube_expose.src import kube
from kube_expose.src.config import ControllerConfig
from kube_expose.src.exposure import (
    ExposureSpec,
    MalformedKeyError,
    WorkloadRef,
    WorkloadSnapshot,
    build_ingress,
    build_service,
    snapshot_from_deployment,
    split_key,
)
from kube_expose.src.informer import DeploymentInformer
from kube_expose.src.metrics import METRICS
from kube_expose.src.workqueue import ExponentialBackoffRateLimiter, RateLimitingQueue

# Requests rejected as invalid will be rejected again; retrying cannot help.
TERMINAL_STATUSES = frozenset({400, 422})


class SyncOutcome(enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retry"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one reconcile of a single workload.

    ``action`` summarises what the reconcile did: ``created``, ``exists``,
    ``deleted``, ``absent`` or ``error``.  ``errors`` carries one message per
    failed operation so partial failures in the delete branch are visible.
    """

    ref: WorkloadRef
    outcome: SyncOutcome
    action: str
    errors: tuple[str, ...] = field(default_factory=tuple)


def classify_api_error(exc: Exception) -> SyncOutcome:
    """Map a failed API call to a queue disposition."""
    if isinstance(exc, ApiException) and exc.status in TERMINAL_STATUSES:
        return SyncOutcome.TERMINAL
    return SyncOutcome.RETRYABLE


def _aggregate(outcomes: list[SyncOutcome]) -> SyncOutcome:
    failures = [outcome for outcome in outcomes if outcome is not SyncOutcome.SUCCESS]
    if not failures:
        return SyncOutcome.SUCCESS
    if all(outcome is SyncOutcome.TERMINAL for outcome in failures):
        return SyncOutcome.TERMINAL
    return SyncOutcome.RETRYABLE


class ExposeController:
    """Creates a Service and an Ingress for every Deployment and removes them with it.

    Informer notifications only enqueue the Deployment's ``namespace/name``
    key.  Workers pull keys from a :class:`RateLimitingQueue` and call
    :meth:`sync_workload`, which re-reads the Deployment from the API server
    and converges the exposure objects from scratch:

    - Deployment missing (``404``): delete the Service and the Ingress named
      after it.  Both deletes are always attempted; ``404`` counts as done.
    - Deployment present: create the Service (selector = pod template labels,
      port 80) and then the Ingress (``Prefix`` path ``/<name>``).  ``409``
      counts as done, which makes repeated reconciles harmless.

    Transient failures requeue the key with exponential backoff; a failing
    reconcile never stops a worker.  No worker starts before the informer
    cache has synced.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        networking_api: NetworkingV1Api,
        informer: DeploymentInformer,
        config: ControllerConfig | None = None,
        queue: RateLimitingQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api
        self.informer = informer
        self.config = config or ControllerConfig()
        self.queue = queue or RateLimitingQueue(
            "kube-expose",
            rate_limiter=ExponentialBackoffRateLimiter(
                base_delay=self.config.retry_base_delay_seconds,
                max_delay=self.config.retry_max_delay_seconds,
            ),
        )
        self.logger = logger or logging.getLogger(__name__)

        self._external_stop = threading.Event()
        self._workers: list[threading.Thread] = []

        informer.add_event_handler(on_add=self.handle_add, on_delete=self.handle_delete)

    @property
    def ready(self) -> threading.Event:
        return self.informer.ready

    def handle_add(self, snapshot: WorkloadSnapshot) -> None:
        self.logger.debug("Deployment %s added; enqueueing", snapshot.key)
        self.queue.add(snapshot.key)

    def handle_delete(self, snapshot: WorkloadSnapshot) -> None:
        self.logger.debug("Deployment %s deleted; enqueueing", snapshot.key)
        self.queue.add(snapshot.key)

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add(WorkloadRef(namespace=namespace, name=name).key)

    # ------------------------------------------------------------------
    # Sync engine
    # ------------------------------------------------------------------

    def _exposure_spec(self, ref: WorkloadRef, labels: dict[str, str]) -> ExposureSpec:
        return ExposureSpec(
            namespace=ref.namespace,
            name=ref.name,
            selector=dict(labels),
            service_type=self.config.service_type,
            ingress_class_name=self.config.ingress_class_name,
        )

    def _probe_workload(self, ref: WorkloadRef) -> Any | None:
        """Read the Deployment live; return ``None`` when the API says it does not exist."""
        try:
            return kube.read_deployment(
                self.apps_api, ref.namespace, ref.name, self.config.api_timeout_seconds
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _create(
        self, kind: str, ref: WorkloadRef, create: Callable[[], None]
    ) -> tuple[SyncOutcome, bool, str | None]:
        """Run one create call.

        Returns the outcome, whether the object already existed and, on failure,
        an error message naming the API cause.
        """
        try:
            create()
        except ApiException as exc:
            if exc.status == 409:
                METRICS.object_operations_total.labels(
                    kind=kind, operation="create", result="exists"
                ).inc()
                self.logger.debug("%s %s already exists", kind, ref)
                return SyncOutcome.SUCCESS, True, None
            return self._operation_failed(kind, "create", ref, exc)
        except (HTTPError, OSError) as exc:
            return self._operation_failed(kind, "create", ref, exc)

        METRICS.object_operations_total.labels(kind=kind, operation="create", result="ok").inc()
        self.logger.info("Created %s %s", kind, ref)
        return SyncOutcome.SUCCESS, False, None

    def _delete(
        self, kind: str, ref: WorkloadRef, delete: Callable[[], None]
    ) -> tuple[SyncOutcome, bool, str | None]:
        """Run one delete call; like :meth:`_create`, but the flag means already gone."""
        try:
            delete()
        except ApiException as exc:
            if exc.status == 404:
                METRICS.object_operations_total.labels(
                    kind=kind, operation="delete", result="absent"
                ).inc()
                return SyncOutcome.SUCCESS, True, None
            return self._operation_failed(kind, "delete", ref, exc)
        except (HTTPError, OSError) as exc:
            return self._operation_failed(kind, "delete", ref, exc)

        METRICS.object_operations_total.labels(kind=kind, operation="delete", result="ok").inc()
        self.logger.info("Deleted %s %s", kind, ref)
        return SyncOutcome.SUCCESS, False, None

    def _operation_failed(
        self, kind: str, operation: str, ref: WorkloadRef, exc: Exception
    ) -> tuple[SyncOutcome, bool, str]:
        outcome = classify_api_error(exc)
        METRICS.object_operations_total.labels(kind=kind, operation=operation, result="error").inc()
        self.logger.error(
            "Failed to %s %s %s (%s): %s",
            operation,
            kind,
            ref,
            outcome.value,
            _describe(exc),
        )
        return outcome, False, f"{operation} {kind} failed: {_describe(exc)}"

    def _teardown(self, ref: WorkloadRef) -> SyncResult:
        timeout = self.config.api_timeout_seconds
        service_outcome, service_absent, service_error = self._delete(
            "Service",
            ref,
            lambda: kube.delete_service(self.core_api, ref.namespace, ref.name, timeout),
        )
        ingress_outcome, ingress_absent, ingress_error = self._delete(
            "Ingress",
            ref,
            lambda: kube.delete_ingress(self.networking_api, ref.namespace, ref.name, timeout),
        )

        errors = tuple(error for error in (service_error, ingress_error) if error is not None)
        outcome = _aggregate([service_outcome, ingress_outcome])
        if outcome is not SyncOutcome.SUCCESS:
            action = "error"
        elif service_absent and ingress_absent:
            action = "absent"
        else:
            action = "deleted"
        return SyncResult(ref=ref, outcome=outcome, action=action, errors=errors)

    def _expose(self, ref: WorkloadRef, deployment: Any) -> SyncResult:
        snapshot = self.informer.get(ref.namespace, ref.name)
        if snapshot is None:
            # The watch has not delivered this Deployment yet; the live read is newer anyway.
            snapshot = snapshot_from_deployment(deployment)
        labels = snapshot.template_labels if snapshot is not None else {}
        if not labels:
            self.logger.error(
                "Deployment %s has no pod template labels; cannot build a selector", ref
            )
            return SyncResult(
                ref=ref,
                outcome=SyncOutcome.TERMINAL,
                action="error",
                errors=("no pod template labels",),
            )

        spec = self._exposure_spec(ref, labels)
        timeout = self.config.api_timeout_seconds

        outcome, service_existed, error = self._create(
            "Service",
            ref,
            lambda: kube.create_service(self.core_api, ref.namespace, build_service(spec), timeout),
        )
        if outcome is not SyncOutcome.SUCCESS:
            return SyncResult(ref=ref, outcome=outcome, action="error", errors=(str(error),))

        ingress_existed = True
        if self.config.ingress_enabled:
            outcome, ingress_existed, error = self._create(
                "Ingress",
                ref,
                lambda: kube.create_ingress(
                    self.networking_api, ref.namespace, build_ingress(spec), timeout
                ),
            )
            if outcome is not SyncOutcome.SUCCESS:
                return SyncResult(
                    ref=ref, outcome=outcome, action="error", errors=(str(error),)
                )

        action = "exists" if service_existed and ingress_existed else "created"
        return SyncResult(ref=ref, outcome=SyncOutcome.SUCCESS, action=action)

    def sync_workload(self, ref: WorkloadRef) -> SyncResult:
        """Converge the Service and Ingress of one Deployment to its current existence.

        The decision between teardown and creation comes only from a live read
        of the Deployment; the event that caused the enqueue is never trusted.
        """
        try:
            deployment = self._probe_workload(ref)
        except (ApiException, HTTPError, OSError) as exc:
            outcome = classify_api_error(exc)
            self.logger.error(
                "Failed to read Deployment %s (%s): %s", ref, outcome.value, _describe(exc)
            )
            return SyncResult(
                ref=ref,
                outcome=outcome,
                action="error",
                errors=(f"read Deployment failed: {_describe(exc)}",),
            )

        if deployment is None:
            self.logger.info("Deployment %s not found; removing its Service and Ingress", ref)
            return self._teardown(ref)
        return self._expose(ref, deployment)

    # ------------------------------------------------------------------
    # Reconciler loop
    # ------------------------------------------------------------------

    def _drop(self, key: Any, reason: str) -> None:
        self.queue.forget(key)
        METRICS.dropped_items_total.labels(reason=reason).inc()

    def _reconcile_key(self, key: Any) -> None:
        try:
            ref = split_key(key)
        except MalformedKeyError as exc:
            self.logger.error("Dropping malformed queue key: %s", exc)
            self._drop(key, "malformed_key")
            METRICS.reconcile_total.labels(result=SyncOutcome.TERMINAL.value).inc()
            return

        started = time.monotonic()
        try:
            result = self.sync_workload(ref)
        except Exception:
            self.logger.exception("Unexpected error reconciling Deployment %s", ref)
            result = SyncResult(ref=ref, outcome=SyncOutcome.RETRYABLE, action="error")
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        METRICS.reconcile_total.labels(result=result.outcome.value).inc()
        if result.outcome is SyncOutcome.SUCCESS:
            self.queue.forget(key)
            self.logger.debug("Reconciled Deployment %s (%s)", ref, result.action)
        elif result.outcome is SyncOutcome.RETRYABLE:
            self.logger.warning(
                "Reconcile of Deployment %s failed (%s); requeueing, attempt %d",
                ref,
                ", ".join(result.errors) or "unexpected error",
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
        else:
            self.logger.error(
                "Reconcile of Deployment %s failed permanently (%s); dropping",
                ref,
                ", ".join(result.errors),
            )
            self._drop(key, "terminal_error")

    def process_next_item(self) -> bool:
        """Take one key off the queue and reconcile it.  Returns False on queue shutdown."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self._reconcile_key(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def request_stop(self) -> None:
        self._external_stop.set()
        self.informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _wait_for_cache_sync(
        self,
        stop_event: threading.Event,
        informer_thread: threading.Thread,
        poll_seconds: float = 0.1,
    ) -> bool:
        """Block until the informer has synced; False if stopped or the informer gave up first."""
        while not self._should_stop(stop_event):
            if self.informer.ready.wait(timeout=poll_seconds):
                return True
            if not informer_thread.is_alive():
                self.logger.error("Deployment informer exited before the cache synced")
                return False
        return False

    def run_forever(
        self,
        shutdown_event: threading.Event | None = None,
        join_timeout_seconds: float = 30.0,
    ) -> None:
        """Run the informer and the reconcile workers until shutdown.

        Workers start only after the informer's first list has populated the
        cache.  Shutdown closes the queue, which lets each worker finish its
        current reconcile and exit; nothing is interrupted mid-call.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        informer_stop = threading.Event()
        informer_thread = threading.Thread(
            target=self.informer.run_forever,
            kwargs={"shutdown_event": informer_stop},
            name="deployment-informer",
            daemon=True,
        )
        informer_thread.start()

        self.logger.info("Waiting for Deployment cache to sync")
        if self._wait_for_cache_sync(stop, informer_thread):
            self.logger.info("Starting %d reconcile worker(s)", self.config.workers)
            self._workers = [
                threading.Thread(target=self._worker, name=f"reconcile-worker-{i}", daemon=True)
                for i in range(self.config.workers)
            ]
            for worker in self._workers:
                worker.start()

            while not self._should_stop(stop):
                if not informer_thread.is_alive():
                    self.logger.error("Deployment informer exited; stopping controller")
                    break
                stop.wait(timeout=1.0)

        self.logger.info("Shutting down controller")
        self.queue.shut_down()
        informer_stop.set()
        self.informer.request_stop()
        for thread in [*self._workers, informer_thread]:
            thread.join(timeout=join_timeout_seconds)
            if thread.is_alive():
                self.logger.warning(
                    "Thread %s did not stop within %ss", thread.name, join_timeout_seconds
                )
        self._workers = []


def _describe(exc: Exception) -> str:
    if isinstance(exc, ApiException):
        return f"status={exc.status} reason={exc.reason}"
    return f"{type(exc).__name__}: {exc}"


def build_controller(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    networking_api: NetworkingV1Api,
    config: ControllerConfig,
) -> ExposeController:
    """Construct an :class:`ExposeController` and its informer from a loaded config."""
    informer = DeploymentInformer(apps_api=apps_api, namespace=config.namespace)
    return ExposeController(
        core_api=core_api,
        apps_api=apps_api,
        networking_api=networking_api,
        informer=informer,
        config=config,
    )
