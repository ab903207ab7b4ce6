from __future__ import annotations

import threading
from datetime import timezone
from typing import Any

import requests

from mirrorsync.models import TASKS_ADAPTER, AsanaConfig, DesiredState
from mirrorsync.state_store import StateStore
from mirrorsync.target_adapter import AdapterError, TargetAdapter, render_description_lines, render_title


ASANA_BASE_URL = "https://app.asana.com/api/1.0"


class AsanaTaskAdapter(TargetAdapter):
    name = TASKS_ADAPTER

    def __init__(self, config: AsanaConfig, state_store: StateStore | None = None) -> None:
        super().__init__(state_store)
        self.config = config
        self._workspace_id = config.workspace_id
        self._user_gids: dict[str, str] = {}
        self._lookup_lock = threading.Lock()

    def is_enabled(self) -> bool:
        return bool(self.config.enabled and self.config.has_credentials())

    def _request(self, method: str, endpoint: str, payload: dict[str, Any] | None = None) -> Any:
        response = requests.request(
            method,
            f"{ASANA_BASE_URL}{endpoint}",
            headers={
                "Authorization": f"Bearer {self.config.access_token}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def _resolve_workspace_id(self) -> str:
        if self._workspace_id:
            return self._workspace_id
        if not self.config.target:
            return ""
        project = self._request("GET", f"/projects/{self.config.target}")
        workspace = project.get("workspace") if isinstance(project, dict) else None
        self._workspace_id = str((workspace or {}).get("gid", "")).strip()
        return self._workspace_id

    def find_user_gid(self, email: str) -> str | None:
        email_key = email.strip().casefold()
        if not email_key:
            return None
        with self._lookup_lock:
            if email_key in self._user_gids:
                return self._user_gids[email_key]
            workspace_id = self._resolve_workspace_id()
            if not workspace_id:
                return None
            users = self._request("GET", f"/workspaces/{workspace_id}/users?opt_fields=email")
            for user in users if isinstance(users, list) else []:
                user_email = str((user or {}).get("email", "")).strip().casefold()
                user_gid = str((user or {}).get("gid", "")).strip()
                if user_email and user_gid:
                    self._user_gids[user_email] = user_gid
            return self._user_gids.get(email_key)

    def _assignee_gid(self, desired: DesiredState) -> str | None:
        if not desired.assignees:
            return None
        # Assignee lookup is best effort: an unresolved user leaves the task unassigned.
        try:
            return self.find_user_gid(desired.assignees[0])
        except Exception as exc:
            self._record_error("assignee_lookup", desired, exc, email=desired.assignees[0])
            return None

    def build_task_payload(self, desired: DesiredState, *, for_create: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": render_title(desired),
            "notes": "\n".join(render_description_lines(desired)),
        }
        if desired.due_at is not None:
            data["due_on"] = desired.due_at.astimezone(timezone.utc).date().isoformat()
        if for_create:
            if self.config.target:
                data["projects"] = [self.config.target]
            elif self.config.workspace_id:
                data["workspace"] = self.config.workspace_id
        return {"data": data}

    def create(self, desired: DesiredState) -> str | None:
        if not self.is_enabled():
            return None
        payload = self.build_task_payload(desired, for_create=True)
        assignee_gid = self._assignee_gid(desired)
        if assignee_gid:
            payload["data"]["assignee"] = assignee_gid
        try:
            task = self._request("POST", "/tasks", payload)
            task_id = str((task or {}).get("gid", "")).strip() if isinstance(task, dict) else ""
            if not task_id:
                raise AdapterError("Asana response does not contain a task gid.")
        except Exception as exc:
            self._record_error("create", desired, exc)
            return None
        return task_id

    def update(self, remote_id: str, desired: DesiredState) -> bool:
        if not self.is_enabled():
            return False
        payload = self.build_task_payload(desired)
        assignee_gid = self._assignee_gid(desired)
        if assignee_gid:
            payload["data"]["assignee"] = assignee_gid
        try:
            self._request("PUT", f"/tasks/{remote_id}", payload)
        except Exception as exc:
            self._record_error("update", desired, exc, remote_id=remote_id)
            return False
        return True
