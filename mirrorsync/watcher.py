from __future__ import annotations

import threading
import traceback
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from mirrorsync.models import ContextSnapshot, EntityKey, ReconcileResult
from mirrorsync.projection import ProjectionBuilder
from mirrorsync.reconciler import Reconciler
from mirrorsync.state_store import StateStore


NotificationHandler = Callable[[ContextSnapshot], object]


class ContextWatcher:
    """Inbound stream of context snapshots.

    Snapshots are delivered to handlers one at a time, in publish order. A
    new handler immediately receives the latest snapshot, if one is known.
    """

    def __init__(
        self,
        initial_snapshot: ContextSnapshot | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.state_store = state_store
        self._handlers: list[NotificationHandler] = []
        self._latest = initial_snapshot
        self._lock = threading.RLock()

    @property
    def latest(self) -> ContextSnapshot | None:
        return self._latest

    def on_notification(self, handler: NotificationHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)
            if self._latest is not None:
                self._deliver(handler, self._latest)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, snapshot: ContextSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            for handler in list(self._handlers):
                self._deliver(handler, snapshot)

    def _deliver(self, handler: NotificationHandler, snapshot: ContextSnapshot) -> None:
        # A failing handler must not end the subscription for the others.
        try:
            handler(snapshot)
        except Exception as exc:
            if self.state_store is None:
                return
            self.state_store.record_audit_event(
                entity_id=snapshot.entity_id or "system",
                variant_id=snapshot.variant_id or "watcher",
                action="handler_error",
                details={
                    "error": f"{type(exc).__name__}: {exc}",
                    "traceback": traceback.format_exc(limit=5),
                },
            )


class SyncDispatcher:
    """Subscribes to a watcher and reconciles each trackable snapshot.

    Dispatch does not wait for earlier reconciliations to finish. Snapshots
    for the same entity key are processed one after another in arrival
    order, so an older projection is never applied after a newer one.
    """

    def __init__(
        self,
        watcher: ContextWatcher,
        projection_builder: ProjectionBuilder,
        reconciler: Reconciler,
        state_store: StateStore | None = None,
        max_workers: int = 4,
    ) -> None:
        self.watcher = watcher
        self.projection_builder = projection_builder
        self.reconciler = reconciler
        self.state_store = state_store
        self.max_workers = max(1, int(max_workers))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: dict[EntityKey, deque[tuple[ContextSnapshot, Future]]] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        with self._lock:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="mirrorsync-dispatch",
            )
        self._unsubscribe = self.watcher.on_notification(self.handle_snapshot)

    def stop(self, wait: bool = True) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)

    def handle_snapshot(self, snapshot: ContextSnapshot) -> Future | None:
        if not snapshot.is_trackable:
            return None
        with self._lock:
            if self._executor is None:
                raise RuntimeError("Dispatcher is not running.")
            key = EntityKey(snapshot.entity_id, snapshot.variant_id)
            future: Future = Future()
            queue = self._pending.setdefault(key, deque())
            queue.append((snapshot, future))
            if len(queue) == 1:
                self._executor.submit(self._drain, key)
            return future

    def _drain(self, key: EntityKey) -> None:
        while True:
            with self._lock:
                snapshot, future = self._pending[key][0]
            try:
                future.set_result(self._process(snapshot))
            except Exception as exc:
                future.set_exception(exc)
            with self._lock:
                queue = self._pending[key]
                queue.popleft()
                if not queue:
                    del self._pending[key]
                    return

    def _process(self, snapshot: ContextSnapshot) -> ReconcileResult | None:
        try:
            desired = self.projection_builder.build_desired_state(snapshot)
            if desired is None:
                return None
            return self.reconciler.reconcile(desired)
        except Exception as exc:
            if self.state_store is not None:
                self.state_store.record_audit_event(
                    entity_id=snapshot.entity_id,
                    variant_id=snapshot.variant_id,
                    action="dispatch_error",
                    details={
                        "error": f"{type(exc).__name__}: {exc}",
                        "traceback": traceback.format_exc(limit=5),
                    },
                )
            return None
