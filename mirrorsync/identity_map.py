from __future__ import annotations

import threading

from mirrorsync.models import CALENDAR_ADAPTER, TASKS_ADAPTER, EntityKey, SyncRecord


_FIELD_BY_ADAPTER = {
    CALENDAR_ADAPTER: "calendar_event_id",
    TASKS_ADAPTER: "task_id",
}


class IdentityMap:
    """Process-lifetime association of entity keys to remote record ids."""

    def __init__(self) -> None:
        self._records: dict[EntityKey, SyncRecord] = {}
        self._lock = threading.RLock()

    def get(self, key: EntityKey) -> SyncRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            return SyncRecord(calendar_event_id=record.calendar_event_id, task_id=record.task_id)

    def set_field(self, key: EntityKey, adapter_name: str, remote_id: str) -> SyncRecord:
        field_name = _FIELD_BY_ADAPTER[adapter_name]
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = SyncRecord()
                self._records[key] = record
            setattr(record, field_name, remote_id)
            return SyncRecord(calendar_event_id=record.calendar_event_id, task_id=record.task_id)

    def items(self) -> list[tuple[EntityKey, SyncRecord]]:
        with self._lock:
            return [
                (key, SyncRecord(calendar_event_id=record.calendar_event_id, task_id=record.task_id))
                for key, record in self._records.items()
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records
