from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


ITEM_EDITOR_PAGE = "itemEditor"
CALENDAR_ADAPTER = "calendar"
TASKS_ADAPTER = "tasks"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _text(value: Any) -> str:
    return str(value or "").strip()


def _timeout(value: Any, default: int = 30) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return default


@dataclass
class Microsoft365Config:
    enabled: bool = False
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    target: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Microsoft365Config":
        data = data or {}
        return cls(
            enabled=parse_bool(data.get("enabled", False)),
            tenant_id=_text(data.get("tenant_id")),
            client_id=_text(data.get("client_id")),
            client_secret=_text(data.get("client_secret")),
            target=_text(data.get("target")),
            timeout_seconds=_timeout(data.get("timeout_seconds", 30)),
        )

    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class AsanaConfig:
    enabled: bool = False
    access_token: str = ""
    workspace_id: str = ""
    target: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AsanaConfig":
        data = data or {}
        return cls(
            enabled=parse_bool(data.get("enabled", False)),
            access_token=_text(data.get("access_token")),
            workspace_id=_text(data.get("workspace_id")),
            target=_text(data.get("target")),
            timeout_seconds=_timeout(data.get("timeout_seconds", 30)),
        )

    def has_credentials(self) -> bool:
        return bool(self.access_token)


@dataclass
class ManagementApiConfig:
    token: str = ""
    environment_id: str = ""
    base_url: str = "https://manage.kontent.ai/v2"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ManagementApiConfig":
        data = data or {}
        return cls(
            token=_text(data.get("token")),
            environment_id=_text(data.get("environment_id")),
            base_url=_text(data.get("base_url")) or "https://manage.kontent.ai/v2",
            timeout_seconds=_timeout(data.get("timeout_seconds", 30)),
        )


@dataclass
class SyncSettings:
    sync_contributors: bool = True
    sync_workflow_steps: bool = True
    create_calendar_events: bool = True
    create_tasks: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncSettings":
        data = data or {}
        return cls(
            sync_contributors=parse_bool(data.get("sync_contributors", True)),
            sync_workflow_steps=parse_bool(data.get("sync_workflow_steps", True)),
            create_calendar_events=parse_bool(data.get("create_calendar_events", True)),
            create_tasks=parse_bool(data.get("create_tasks", True)),
        )

    def allows(self, adapter_name: str) -> bool:
        if adapter_name == CALENDAR_ADAPTER:
            return self.create_calendar_events
        if adapter_name == TASKS_ADAPTER:
            return self.create_tasks
        return False


@dataclass
class AppConfig:
    microsoft365: Microsoft365Config = field(default_factory=Microsoft365Config)
    asana: AsanaConfig = field(default_factory=AsanaConfig)
    management_api: ManagementApiConfig = field(default_factory=ManagementApiConfig)
    sync_settings: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            microsoft365=Microsoft365Config.from_dict(data.get("microsoft365")),
            asana=AsanaConfig.from_dict(data.get("asana")),
            management_api=ManagementApiConfig.from_dict(data.get("management_api")),
            sync_settings=SyncSettings.from_dict(data.get("sync_settings")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class EntityKey:
    entity_id: str
    variant_id: str

    def __str__(self) -> str:
        return f"{self.entity_id}:{self.variant_id}"


@dataclass(frozen=True)
class DesiredState:
    entity_id: str
    variant_id: str
    title: str | None = None
    status_label: str | None = None
    assignees: tuple[str, ...] = ()
    due_at: datetime | None = None

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.entity_id, self.variant_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "status_label": self.status_label,
            "assignees": list(self.assignees),
            "due_at": serialize_datetime(self.due_at),
        }


@dataclass
class SyncRecord:
    calendar_event_id: str | None = None
    task_id: str | None = None

    def remote_id(self, adapter_name: str) -> str | None:
        if adapter_name == CALENDAR_ADAPTER:
            return self.calendar_event_id
        if adapter_name == TASKS_ADAPTER:
            return self.task_id
        raise KeyError(adapter_name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ContextSnapshot:
    current_page: str
    entity_id: str = ""
    variant_id: str = ""
    environment_id: str = ""
    title: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ContextSnapshot":
        data = data or {}
        return cls(
            current_page=_text(data.get("current_page")),
            entity_id=_text(data.get("entity_id")),
            variant_id=_text(data.get("variant_id")),
            environment_id=_text(data.get("environment_id")),
            title=_text(data.get("title")),
        )

    @property
    def is_trackable(self) -> bool:
        return self.current_page == ITEM_EDITOR_PAGE and bool(self.entity_id and self.variant_id)


@dataclass
class ReconcileResult:
    key: EntityKey
    actions: dict[str, str] = field(default_factory=dict)
    record: SyncRecord | None = None
    duration_ms: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failures(self) -> int:
        return sum(1 for action in self.actions.values() if action.endswith("_failed"))

    @property
    def status(self) -> str:
        if self.failures == 0:
            return "success"
        if self.failures == len(self.actions):
            return "error"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.key.entity_id,
            "variant_id": self.key.variant_id,
            "status": self.status,
            "actions": dict(self.actions),
            "record": self.record.to_dict() if self.record else None,
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }
