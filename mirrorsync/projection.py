from __future__ import annotations

import traceback

from mirrorsync.management_api import ManagementApiClient, VariantMetadata
from mirrorsync.models import ContextSnapshot, DesiredState, SyncSettings
from mirrorsync.state_store import StateStore


class ProjectionBuilder:
    """Turns a context snapshot into the desired state of its remote records.

    Enrichment failures never abort the projection; the enrichable fields
    are simply left empty.
    """

    def __init__(
        self,
        management_api: ManagementApiClient,
        sync_settings: SyncSettings,
        state_store: StateStore | None = None,
    ) -> None:
        self.management_api = management_api
        self.sync_settings = sync_settings
        self.state_store = state_store

    def _enrichment_wanted(self) -> bool:
        return self.sync_settings.sync_contributors or self.sync_settings.sync_workflow_steps

    def _fetch_metadata(self, snapshot: ContextSnapshot) -> VariantMetadata | None:
        if not self._enrichment_wanted():
            return None
        if not self.management_api.is_configured(snapshot.environment_id):
            self._audit(snapshot, "enrichment_skipped", {"reason": "management_api_not_configured"})
            return None
        try:
            return self.management_api.fetch_variant(
                snapshot.entity_id,
                snapshot.variant_id,
                environment_id=snapshot.environment_id,
            )
        except Exception as exc:
            self._audit(
                snapshot,
                "enrichment_error",
                {
                    "error": f"{type(exc).__name__}: {exc}",
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return None

    def build_desired_state(self, snapshot: ContextSnapshot) -> DesiredState | None:
        if not snapshot.is_trackable:
            return None
        metadata = self._fetch_metadata(snapshot)
        status_label = None
        assignees: tuple[str, ...] = ()
        due_at = None
        if metadata is not None:
            if self.sync_settings.sync_workflow_steps:
                status_label = metadata.workflow_step
            if self.sync_settings.sync_contributors:
                assignees = tuple(metadata.contributors)
            due_at = metadata.due_at
        return DesiredState(
            entity_id=snapshot.entity_id,
            variant_id=snapshot.variant_id,
            title=snapshot.title or None,
            status_label=status_label,
            assignees=assignees,
            due_at=due_at,
        )

    def _audit(self, snapshot: ContextSnapshot, action: str, details: dict) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            entity_id=snapshot.entity_id,
            variant_id=snapshot.variant_id,
            action=action,
            details=details,
        )
