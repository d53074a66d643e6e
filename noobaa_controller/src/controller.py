from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from noobaa_controller.src import kube
from noobaa_controller.src.errors import ReconcileError, ResourceDecodeError
from noobaa_controller.src.reconciler import Action, Context, error_policy, reconcile
from noobaa_controller.src.resource import NooBaaSource

ObjectKey = tuple[str, str]
ReconcileFn = Callable[[NooBaaSource, Context], Action]
ErrorPolicyFn = Callable[[Exception, NooBaaSource, Context], Action]


class NooBaaSourceController:
    """Watches NooBaaSources and runs serialized per-object reconciles.

    One list-then-watch subscription feeds :meth:`handle_event`, which decodes
    each object and hands it to :meth:`dispatch`.  Dispatch keeps at most one
    reconcile in flight per ``(namespace, name)``: a notification arriving
    while that key is busy replaces the key's pending snapshot and runs once
    the current reconcile returns.  Distinct keys each get their own worker
    thread, with no global cap.

    Every outcome yields an :class:`Action`.  Requeues are kept as monotonic
    due-at timestamps and fired by a scheduler thread, which re-dispatches the
    latest snapshot observed for the key.

    Key internal state (all guarded by ``_lock``):
        ``_store``
            Latest decoded snapshot per key, refreshed by every notification.
        ``_running`` / ``_workers``
            Keys with a reconcile in flight and the threads serving them.
        ``_pending``
            Snapshot waiting behind the in-flight reconcile for the same key.
        ``_requeue_due``
            Maps keys to the ``time.monotonic()`` time their requeue fires.
    """

    def __init__(
        self,
        custom_api: Any,
        context: Context,
        namespace: str | None = None,
        watch_timeout_seconds: int = 30,
        reconcile_fn: ReconcileFn = reconcile,
        error_policy_fn: ErrorPolicyFn = error_policy,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.custom_api = custom_api
        self.context = context
        self.namespace = namespace or None
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._reconcile_fn = reconcile_fn
        self._error_policy_fn = error_policy_fn
        self._watch_factory = watch_factory
        self._monotonic = monotonic

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()

        self._lock = threading.Lock()
        self._scheduler_cond = threading.Condition(self._lock)
        self._store: dict[ObjectKey, NooBaaSource] = {}
        self._running: set[ObjectKey] = set()
        self._pending: dict[ObjectKey, NooBaaSource] = {}
        self._workers: dict[ObjectKey, threading.Thread] = {}
        self._requeue_due: dict[ObjectKey, float] = {}
        self._accepting = True
        self._scheduler_stopped = True
        self._scheduler_thread: threading.Thread | None = None

    # -- dispatch ---------------------------------------------------------------

    def dispatch(self, source: NooBaaSource) -> bool:
        """Queue a reconcile for *source*.  Returns False once the loop is stopping."""
        key = source.key
        with self._lock:
            if not self._accepting:
                self.logger.debug("Dropping notification for %s/%s during shutdown", *key)
                return False
            self._store[key] = source
            self._requeue_due.pop(key, None)
            if key in self._running:
                self._pending[key] = source
                self.logger.debug("Reconcile for %s/%s in flight; queued latest snapshot", *key)
                return True
            self._running.add(key)
            worker = threading.Thread(
                target=self._work,
                args=(key, source),
                name=f"reconcile-{key[0]}/{key[1]}",
                daemon=True,
            )
            self._workers[key] = worker
            worker.start()
        return True

    def forget(self, key: ObjectKey) -> None:
        """Drop the cached snapshot, pending work and scheduled requeue for *key*."""
        with self._lock:
            self._store.pop(key, None)
            self._pending.pop(key, None)
            self._requeue_due.pop(key, None)

    def in_flight(self) -> set[ObjectKey]:
        with self._lock:
            return set(self._running)

    def scheduled_requeues(self) -> dict[ObjectKey, float]:
        """Return seconds until each scheduled requeue fires."""
        now = self._monotonic()
        with self._lock:
            return {key: max(0.0, due - now) for key, due in self._requeue_due.items()}

    def _work(self, key: ObjectKey, source: NooBaaSource) -> None:
        current = source
        while True:
            action = self._reconcile_once(current)
            with self._lock:
                self._schedule_locked(key, action)
                following = self._pending.pop(key, None)
                if following is not None and not self._accepting:
                    self.logger.info("Discarding queued reconcile for %s/%s on shutdown", *key)
                    following = None
                if following is None:
                    self._running.discard(key)
                    self._workers.pop(key, None)
                    return
            current = following

    def _reconcile_once(self, source: NooBaaSource) -> Action:
        try:
            return self._reconcile_fn(source, self.context)
        except ReconcileError as exc:
            return self._error_policy_fn(exc, source, self.context)
        except Exception as exc:
            self.logger.exception(
                "Unexpected error reconciling NooBaaSource %s/%s", source.namespace, source.name
            )
            return self._error_policy_fn(exc, source, self.context)

    # -- requeue scheduling -----------------------------------------------------

    def _schedule_locked(self, key: ObjectKey, action: Action) -> None:
        if action.requeue_after is None or key not in self._store:
            self._requeue_due.pop(key, None)
            return
        self._requeue_due[key] = self._monotonic() + action.requeue_after
        self._scheduler_cond.notify_all()

    def _pop_due_locked(self, now_monotonic: float) -> list[ObjectKey]:
        due = [key for key, due_at in self._requeue_due.items() if due_at <= now_monotonic]
        for key in due:
            del self._requeue_due[key]
        return due

    def _next_wait_locked(self, now_monotonic: float) -> float | None:
        if not self._requeue_due:
            return None
        return max(0.0, min(self._requeue_due.values()) - now_monotonic)

    def _run_scheduler(self) -> None:
        while True:
            with self._scheduler_cond:
                if self._scheduler_stopped:
                    return
                now_monotonic = self._monotonic()
                due = self._pop_due_locked(now_monotonic)
                if not due:
                    self._scheduler_cond.wait(timeout=self._next_wait_locked(now_monotonic))
                    continue
                snapshots = [self._store[key] for key in due if key in self._store]
            for source in snapshots:
                self.logger.debug("Requeue due for %s/%s", source.namespace, source.name)
                self.dispatch(source)

    def start_scheduler(self) -> None:
        """Start the requeue scheduler thread and begin accepting work."""
        with self._lock:
            self._accepting = True
            if self._scheduler_thread is not None and self._scheduler_thread.is_alive():
                return
            self._scheduler_stopped = False
            self._scheduler_thread = threading.Thread(
                target=self._run_scheduler, name="requeue-scheduler", daemon=True
            )
            self._scheduler_thread.start()

    def drain(self, timeout: float | None = None) -> None:
        """Stop accepting work, stop the scheduler and wait for in-flight reconciles."""
        with self._scheduler_cond:
            self._accepting = False
            self._scheduler_stopped = True
            self._pending.clear()
            self._scheduler_cond.notify_all()
            scheduler = self._scheduler_thread
            workers = list(self._workers.values())

        if scheduler is not None:
            scheduler.join(timeout=timeout)
        for worker in workers:
            worker.join(timeout=timeout)
            if worker.is_alive():
                self.logger.warning("Reconcile thread %s still running after drain", worker.name)

    # -- watch ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _decode(self, obj: Any) -> NooBaaSource | None:
        try:
            return NooBaaSource.from_dict(obj)
        except ResourceDecodeError as exc:
            metadata = obj.get("metadata") if isinstance(obj, dict) else None
            ident = "<unknown>"
            if isinstance(metadata, dict):
                ident = f"{metadata.get('namespace')}/{metadata.get('name')}"
            self.logger.warning("Skipping malformed NooBaaSource %s: %s", ident, exc)
            return None

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Process a single watch notification.  Returns True when a reconcile was queued."""
        if event_type == "BOOKMARK":
            return False

        if event_type == "DELETED":
            metadata = obj.get("metadata") if isinstance(obj, dict) else None
            if isinstance(metadata, dict) and metadata.get("name"):
                key = (str(metadata.get("namespace") or ""), str(metadata["name"]))
                self.forget(key)
                self.logger.info("NooBaaSource %s/%s deleted", *key)
            return False

        if event_type not in {"ADDED", "MODIFIED"}:
            self.logger.warning("Ignoring watch event of unknown type %r", event_type)
            return False

        source = self._decode(obj)
        if source is None:
            return False
        return self.dispatch(source)

    def _sync_from_list(self, listing: Any) -> str | None:
        """Dispatch every listed object and forget keys that vanished; return the list resourceVersion."""
        items = (listing.get("items") or []) if isinstance(listing, dict) else []
        seen: set[ObjectKey] = set()
        for obj in items:
            source = self._decode(obj)
            if source is None:
                continue
            seen.add(source.key)
            self.dispatch(source)

        with self._lock:
            vanished = [key for key in self._store if key not in seen]
        for key in vanished:
            self.logger.info("NooBaaSource %s/%s no longer listed; forgetting", *key)
            self.forget(key)

        metadata = listing.get("metadata") if isinstance(listing, dict) else None
        if isinstance(metadata, dict):
            return metadata.get("resourceVersion")
        return None

    def _initial_list(self, stop: threading.Event) -> tuple[bool, str | None]:
        """List with jittered exponential backoff until success, stop, or an RBAC denial."""
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = kube.list_sources(self.custom_api, self.namespace)
                resource_version = self._sync_from_list(listing)
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                return True, resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial NooBaaSource list failed")
                self.context.metrics.watch_errors.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial NooBaaSource list")
                self.context.metrics.watch_errors.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch NooBaaSources until shutdown.

        1. Lists all NooBaaSources (retrying with jittered backoff) and
           dispatches every item, then marks the controller ready.
        2. Opens a watch from the list's ``resourceVersion``; server-side
           timeouts just reconnect.
        3. On ``410 Gone`` re-lists, dispatching every item again and
           forgetting objects deleted while disconnected.
        4. On transient errors backs off with jitter (1 s doubling to 30 s).
        5. ``401`` / ``403`` end the loop with an RBAC hint.
        6. On exit stops the requeue scheduler and waits for in-flight
           reconciles to finish.
        """
        stop = shutdown_event or threading.Event()
        self.start_scheduler()
        try:
            self._watch_loop(stop)
        finally:
            self.drain()
            self.ready.clear()
            self._external_stop.clear()
            self.logger.info("NooBaaSource controller loop stopped")

    def _watch_loop(self, stop: threading.Event) -> None:
        listed, resource_version = self._initial_list(stop)
        if not listed:
            return

        backoff_seconds = 1
        watch_stream_count = 0
        list_fn, list_kwargs = kube.list_function(self.custom_api, self.namespace)

        while not self._should_stop(stop):
            watcher = self._watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    self.context.metrics.watch_reconnects.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break
                    if not isinstance(event, dict):
                        self.logger.warning("Skipping non-object watch event %r", event)
                        continue

                    obj = event.get("object")
                    if isinstance(obj, dict):
                        metadata = obj.get("metadata")
                        if isinstance(metadata, dict) and metadata.get("resourceVersion"):
                            resource_version = metadata["resourceVersion"]

                    event_type = str(event.get("type", ""))
                    try:
                        self.handle_event(event_type=event_type, obj=obj)
                    except Exception:
                        self.logger.exception("Failed to handle %s watch event", event_type)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = kube.list_sources(self.custom_api, self.namespace)
                        resource_version = self._sync_from_list(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        self.context.metrics.watch_errors.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.context.metrics.watch_errors.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                self.context.metrics.watch_errors.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                self.context.metrics.watch_errors.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
