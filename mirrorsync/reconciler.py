from __future__ import annotations

import threading
import time
import traceback
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterable, Iterator

from mirrorsync.identity_map import IdentityMap
from mirrorsync.models import DesiredState, EntityKey, ReconcileResult, SyncRecord, SyncSettings
from mirrorsync.state_store import StateStore
from mirrorsync.target_adapter import TargetAdapter


CREATED = "created"
UPDATED = "updated"
CREATE_FAILED = "create_failed"
UPDATE_FAILED = "update_failed"
SKIPPED = "skipped"


class Reconciler:
    """Drives create/update calls for each adapter against the identity map.

    Reconciliations for the same entity key take turns in arrival order;
    different keys run in parallel. Within one reconciliation the adapters
    are independent: one adapter failing never prevents or rolls back the
    other.
    """

    def __init__(
        self,
        adapters: Iterable[TargetAdapter],
        identity_map: IdentityMap | None = None,
        state_store: StateStore | None = None,
        sync_settings: SyncSettings | None = None,
    ) -> None:
        self.adapters = list(adapters)
        self.identity_map = identity_map if identity_map is not None else IdentityMap()
        self.state_store = state_store
        self.sync_settings = sync_settings or SyncSettings()
        # Waiting turns per key; a key is dropped once nobody holds or awaits it.
        self._turns: dict[EntityKey, deque[threading.Event]] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _key_turn(self, key: EntityKey) -> Iterator[None]:
        turn = threading.Event()
        with self._registry_lock:
            queue = self._turns.setdefault(key, deque())
            queue.append(turn)
            if len(queue) == 1:
                turn.set()
        turn.wait()
        try:
            yield
        finally:
            with self._registry_lock:
                queue = self._turns[key]
                queue.popleft()
                if queue:
                    queue[0].set()
                else:
                    del self._turns[key]

    def reconcile(self, desired: DesiredState) -> ReconcileResult:
        key = desired.key
        started = time.monotonic()
        with self._key_turn(key):
            run_id = self._start_run(key)
            existing = self.identity_map.get(key)
            if len(self.adapters) > 1:
                with ThreadPoolExecutor(max_workers=len(self.adapters)) as pool:
                    futures = [
                        (adapter.name, pool.submit(self._sync_adapter, adapter, desired, existing, run_id))
                        for adapter in self.adapters
                    ]
                    actions = {name: future.result() for name, future in futures}
            else:
                actions = {
                    adapter.name: self._sync_adapter(adapter, desired, existing, run_id)
                    for adapter in self.adapters
                }
            result = ReconcileResult(
                key=key,
                actions=actions,
                record=self.identity_map.get(key),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            self._finish_run(run_id, result)
        return result

    def _sync_adapter(
        self,
        adapter: TargetAdapter,
        desired: DesiredState,
        existing: SyncRecord | None,
        run_id: int | None = None,
    ) -> str:
        if not self.sync_settings.allows(adapter.name):
            self._audit(desired, SKIPPED, {"adapter": adapter.name, "reason": "disabled_in_sync_settings"}, run_id)
            return SKIPPED
        if not adapter.is_enabled():
            self._audit(desired, SKIPPED, {"adapter": adapter.name, "reason": "adapter_not_configured"}, run_id)
            return SKIPPED

        remote_id = existing.remote_id(adapter.name) if existing is not None else None
        details: dict = {"adapter": adapter.name}
        try:
            if remote_id:
                details["remote_id"] = remote_id
                # On failure the id is kept: the failure is assumed to be transient.
                action = UPDATED if adapter.update(remote_id, desired) else UPDATE_FAILED
            else:
                new_id = adapter.create(desired)
                if new_id:
                    self.identity_map.set_field(desired.key, adapter.name, new_id)
                    details["remote_id"] = new_id
                    action = CREATED
                else:
                    action = CREATE_FAILED
        except Exception as exc:
            action = UPDATE_FAILED if remote_id else CREATE_FAILED
            details["error"] = f"{type(exc).__name__}: {exc}"
            details["traceback"] = traceback.format_exc(limit=5)
        self._audit(desired, action, details, run_id)
        return action

    def _audit(self, desired: DesiredState, action: str, details: dict, run_id: int | None = None) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            entity_id=desired.entity_id,
            variant_id=desired.variant_id,
            action=action,
            details=details,
            run_id=run_id,
        )

    def _start_run(self, key: EntityKey) -> int | None:
        if self.state_store is None:
            return None
        return self.state_store.start_reconcile_run(entity_id=key.entity_id, variant_id=key.variant_id)

    def _finish_run(self, run_id: int | None, result: ReconcileResult) -> None:
        if self.state_store is None or run_id is None:
            return
        self.state_store.finish_reconcile_run(
            run_id=run_id,
            status=result.status,
            actions=result.actions,
            duration_ms=result.duration_ms,
            failures=result.failures,
        )

    def sync_status(self, entity_id: str, variant_id: str) -> SyncRecord | None:
        return self.identity_map.get(EntityKey(entity_id, variant_id))
