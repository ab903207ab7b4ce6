from __future__ import annotations

import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from mirrorsync.models import DesiredState
from mirrorsync.state_store import StateStore


DUE_WINDOW_OFFSET = timedelta(minutes=30)
DEFAULT_SLOT_LEAD = timedelta(hours=24)
DEFAULT_SLOT_DURATION = timedelta(hours=1)


def render_title(desired: DesiredState) -> str:
    return desired.title or f"Content item: {desired.entity_id}"


def render_description_lines(desired: DesiredState) -> list[str]:
    lines = [
        f"Content item ID: {desired.entity_id}",
        f"Language ID: {desired.variant_id}",
    ]
    if desired.status_label:
        lines.append(f"Workflow step: {desired.status_label}")
    if desired.assignees:
        lines.append(f"Contributors: {', '.join(desired.assignees)}")
    if desired.due_at is not None:
        lines.append(f"Due: {desired.due_at.astimezone(timezone.utc).isoformat()}")
    return lines


def event_window(desired: DesiredState, now: datetime | None = None) -> tuple[datetime, datetime]:
    if desired.due_at is not None:
        due = desired.due_at.astimezone(timezone.utc)
        return due - DUE_WINDOW_OFFSET, due + DUE_WINDOW_OFFSET
    start = (now or datetime.now(timezone.utc)).astimezone(timezone.utc) + DEFAULT_SLOT_LEAD
    return start, start + DEFAULT_SLOT_DURATION


class AdapterError(RuntimeError):
    pass


class TargetAdapter:
    """Uniform create/update capability over one external system.

    ``create`` returns the new remote id or ``None``; ``update`` returns a
    bool. Neither raises for transport or API failures: the failure is
    written to the audit store and reported through the return value.
    """

    name = ""

    def __init__(self, state_store: StateStore | None = None) -> None:
        self.state_store = state_store

    def is_enabled(self) -> bool:
        raise NotImplementedError

    def create(self, desired: DesiredState) -> str | None:
        raise NotImplementedError

    def update(self, remote_id: str, desired: DesiredState) -> bool:
        raise NotImplementedError

    def _record(self, action: str, desired: DesiredState, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            entity_id=desired.entity_id,
            variant_id=desired.variant_id,
            action=action,
            details={"adapter": self.name, **details},
        )

    def _record_error(self, operation: str, desired: DesiredState, exc: BaseException, **extra: Any) -> None:
        details: dict[str, Any] = {
            "operation": operation,
            "error": f"{type(exc).__name__}: {exc}",
            "traceback": traceback.format_exc(limit=5),
        }
        if isinstance(exc, requests.HTTPError) and exc.response is not None:
            details["status_code"] = exc.response.status_code
        details.update(extra)
        self._record(f"{self.name}_error", desired, details)
