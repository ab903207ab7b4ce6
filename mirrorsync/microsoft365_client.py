from __future__ import annotations

import html
import threading
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import requests

from mirrorsync.models import CALENDAR_ADAPTER, DesiredState, Microsoft365Config
from mirrorsync.state_store import StateStore
from mirrorsync.target_adapter import (
    AdapterError,
    TargetAdapter,
    event_window,
    render_description_lines,
    render_title,
)


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
REMINDER_MINUTES = 15
REMOTE_ID_SEPARATOR = "|"


def _graph_datetime(value: datetime) -> dict[str, str]:
    utc_value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return {"dateTime": utc_value.isoformat(timespec="seconds"), "timeZone": "UTC"}


def compose_remote_id(mailbox: str, event_id: str) -> str:
    return f"{mailbox}{REMOTE_ID_SEPARATOR}{event_id}"


def split_remote_id(remote_id: str) -> tuple[str, str]:
    # Event ids are scoped to the mailbox they were created in.
    mailbox, sep, event_id = remote_id.partition(REMOTE_ID_SEPARATOR)
    if not sep:
        return "", remote_id
    return mailbox, event_id


class Microsoft365CalendarAdapter(TargetAdapter):
    name = CALENDAR_ADAPTER

    def __init__(self, config: Microsoft365Config, state_store: StateStore | None = None) -> None:
        super().__init__(state_store)
        self.config = config
        self._token = ""
        self._token_expires_at: datetime | None = None
        self._token_lock = threading.Lock()

    def is_enabled(self) -> bool:
        return bool(self.config.enabled and self.config.has_credentials())

    def _access_token(self) -> str:
        with self._token_lock:
            now = datetime.now(timezone.utc)
            if self._token and self._token_expires_at and now < self._token_expires_at:
                return self._token
            response = requests.post(
                TOKEN_URL_TEMPLATE.format(tenant_id=self.config.tenant_id),
                data={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
            token = str(payload.get("access_token", "")).strip()
            if not token:
                raise AdapterError("Token response does not contain access_token.")
            expires_in = int(payload.get("expires_in", 3599) or 3599)
            self._token = token
            self._token_expires_at = now + timedelta(seconds=max(0, expires_in - 60))
            return token

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }

    def _mailbox(self, desired: DesiredState) -> str:
        if self.config.target:
            return self.config.target
        return desired.assignees[0] if desired.assignees else ""

    def _events_url(self, mailbox: str) -> str:
        return f"{GRAPH_BASE_URL}/users/{quote(mailbox, safe='@')}/calendar/events"

    def build_event_payload(
        self,
        desired: DesiredState,
        *,
        include_reminder: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = event_window(desired, now=now)
        body = "".join(f"<p>{html.escape(line)}</p>" for line in render_description_lines(desired))
        payload: dict[str, Any] = {
            "subject": render_title(desired),
            "body": {"contentType": "HTML", "content": body},
            "start": _graph_datetime(start),
            "end": _graph_datetime(end),
            "attendees": [
                {"emailAddress": {"address": assignee}, "type": "required"}
                for assignee in desired.assignees
            ],
        }
        if include_reminder:
            payload["isReminderOn"] = True
            payload["reminderMinutesBeforeStart"] = REMINDER_MINUTES
        return payload

    def create(self, desired: DesiredState) -> str | None:
        if not self.is_enabled():
            return None
        mailbox = self._mailbox(desired)
        if not mailbox:
            self._record_error(
                "create",
                desired,
                AdapterError("No target mailbox configured and no assignees to host the event."),
            )
            return None
        try:
            response = requests.post(
                self._events_url(mailbox),
                headers=self._headers(),
                json=self.build_event_payload(desired, include_reminder=True),
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            event_id = str((response.json() or {}).get("id", "")).strip()
            if not event_id:
                raise AdapterError("Graph response does not contain an event id.")
        except Exception as exc:
            self._record_error("create", desired, exc, mailbox=mailbox)
            return None
        return compose_remote_id(mailbox, event_id)

    def update(self, remote_id: str, desired: DesiredState) -> bool:
        if not self.is_enabled():
            return False
        mailbox, event_id = split_remote_id(remote_id)
        mailbox = mailbox or self._mailbox(desired)
        if not mailbox or not event_id:
            self._record_error("update", desired, AdapterError(f"Unusable calendar event id: {remote_id}"))
            return False
        try:
            response = requests.patch(
                f"{self._events_url(mailbox)}/{quote(event_id, safe='')}",
                headers=self._headers(),
                json=self.build_event_payload(desired),
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
        except Exception as exc:
            self._record_error("update", desired, exc, mailbox=mailbox, remote_id=remote_id)
            return False
        return True
