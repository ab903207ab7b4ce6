from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from mirrorsync.models import AppConfig, default_app_config, parse_bool


SECRET_FIELDS = (
    ("microsoft365", "client_secret"),
    ("asana", "access_token"),
    ("management_api", "token"),
)

# Environment variable -> (section, field). Set values win over the config file.
ENV_OVERRIDES = {
    "MS365_ENABLED": ("microsoft365", "enabled"),
    "MS365_TENANT_ID": ("microsoft365", "tenant_id"),
    "MS365_CLIENT_ID": ("microsoft365", "client_id"),
    "MS365_CLIENT_SECRET": ("microsoft365", "client_secret"),
    "MS365_TARGET_MAILBOX": ("microsoft365", "target"),
    "ASANA_ENABLED": ("asana", "enabled"),
    "ASANA_ACCESS_TOKEN": ("asana", "access_token"),
    "ASANA_WORKSPACE_ID": ("asana", "workspace_id"),
    "ASANA_PROJECT_ID": ("asana", "target"),
    "KONTENT_MANAGEMENT_API_TOKEN": ("management_api", "token"),
    "KONTENT_ENVIRONMENT_ID": ("management_api", "environment_id"),
}

_BOOL_FIELDS = {"enabled"}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, field_name) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        value: Any = parse_bool(raw) if field_name in _BOOL_FIELDS else raw.strip()
        overrides.setdefault(section, {})[field_name] = value
    return overrides


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config root must be a mapping: {self.config_path}")
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()


def mask_config(config: AppConfig) -> dict[str, Any]:
    config_dict = config.to_dict()
    for section, field_name in SECRET_FIELDS:
        if config_dict.get(section, {}).get(field_name):
            config_dict[section][field_name] = "***"
    return config_dict


def resolve_config(config_manager: ConfigManager, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Resolve the effective configuration once, at startup.

    File values are overlaid by environment variables. The result is passed
    to every component by value and is not re-read per notification.
    """
    environ = os.environ if environ is None else environ
    base = config_manager.load().to_dict()
    return AppConfig.from_dict(_deep_merge(base, env_overrides(environ)))
