from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from mirrorsync.models import ManagementApiConfig, parse_iso_datetime


@dataclass
class VariantMetadata:
    workflow_step: str | None = None
    contributors: list[str] = field(default_factory=list)
    due_at: datetime | None = None


def _workflow_step_label(payload: dict[str, Any]) -> str | None:
    step = payload.get("workflow_step")
    if not isinstance(step, dict):
        return None
    for key in ("codename", "name", "id"):
        value = str(step.get(key, "") or "").strip()
        if value:
            return value
    return None


def _contributor_emails(payload: dict[str, Any]) -> list[str]:
    emails: list[str] = []
    for contributor in payload.get("contributors") or []:
        if not isinstance(contributor, dict):
            continue
        email = str(contributor.get("email", "") or "").strip()
        if email and email not in emails:
            emails.append(email)
    return emails


def _due_date(payload: dict[str, Any]) -> datetime | None:
    raw = payload.get("due_date")
    if isinstance(raw, dict):
        raw = raw.get("value")
    if not raw:
        return None
    try:
        return parse_iso_datetime(str(raw))
    except ValueError:
        return None


class ManagementApiClient:
    def __init__(self, config: ManagementApiConfig) -> None:
        self.config = config

    def is_configured(self, environment_id: str = "") -> bool:
        return bool(self.config.token and (environment_id or self.config.environment_id))

    def _variant_endpoint(self, environment_id: str, entity_id: str, variant_id: str) -> str:
        base = self.config.base_url.rstrip("/")
        return f"{base}/projects/{environment_id}/items/{entity_id}/variants/{variant_id}"

    def fetch_variant(self, entity_id: str, variant_id: str, environment_id: str = "") -> VariantMetadata:
        environment = self.config.environment_id or environment_id
        if not self.is_configured(environment):
            raise RuntimeError("Management API token or environment id is not configured.")
        response = requests.get(
            self._variant_endpoint(environment, entity_id, variant_id),
            headers={
                "Authorization": f"Bearer {self.config.token}",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Variant response root must be an object.")
        return VariantMetadata(
            workflow_step=_workflow_step_label(payload),
            contributors=_contributor_emails(payload),
            due_at=_due_date(payload),
        )
