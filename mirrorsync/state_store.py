from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite audit trail for reconcile runs and adapter events.

    Only the audit trail lives here; remote ids are kept in the in-memory
    identity map and are not written to disk.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS reconcile_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            variant_id TEXT NOT NULL,
            status TEXT NOT NULL,
            actions_json TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            failures INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            variant_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_reconcile_run(
        self,
        *,
        entity_id: str,
        variant_id: str,
        status: str,
        actions: dict[str, str],
        duration_ms: int,
        failures: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO reconcile_runs(run_at, entity_id, variant_id, status, actions_json, duration_ms, failures)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        entity_id,
                        variant_id,
                        status,
                        json.dumps(actions, ensure_ascii=False),
                        int(duration_ms),
                        int(failures),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_reconcile_run(self, *, entity_id: str, variant_id: str) -> int:
        return self.record_reconcile_run(
            entity_id=entity_id,
            variant_id=variant_id,
            status="running",
            actions={},
            duration_ms=0,
            failures=0,
        )

    def finish_reconcile_run(
        self,
        *,
        run_id: int,
        status: str,
        actions: dict[str, str],
        duration_ms: int,
        failures: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE reconcile_runs
                    SET status = ?, actions_json = ?, duration_ms = ?, failures = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        json.dumps(actions, ensure_ascii=False),
                        int(duration_ms),
                        int(failures),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_reconcile_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, entity_id, variant_id, status, actions_json, duration_ms, failures
                    FROM reconcile_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["actions"] = json.loads(item.pop("actions_json") or "{}")
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        entity_id: str,
        variant_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, entity_id, variant_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        entity_id,
                        variant_id,
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, entity_id, variant_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, entity_id, variant_id, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def get_audit_event(self, event_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, run_id, created_at, entity_id, variant_id, action, details_json
                    FROM audit_events
                    WHERE id = ?
                    """,
                    (int(event_id),),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["details"] = json.loads(item.pop("details_json") or "{}")
        return item
