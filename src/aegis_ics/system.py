from __future__ import annotations

from typing import Any

from aegis_ics.ai import AnalysisGateway, ModelClient
from aegis_ics.audit import AuditTrail
from aegis_ics.db import PathLike
from aegis_ics.dispatch import AlertDispatcher
from aegis_ics.errors import AuthorizationError
from aegis_ics.intelligence import GeospatialMatcher
from aegis_ics.models import (
    Actor,
    AIAnalysis,
    AlertChannel,
    AlertLink,
    AuditLogEntry,
    BulkAlertResult,
    Helper,
    Incident,
    IncidentType,
    Location,
    NearbyHelper,
    ResourceKind,
)
from aegis_ics.policy import Capability, can_view, require
from aegis_ics.store import ChangeFeed, IncidentStore


class IncidentCommandSystem:
    """One entry point over the store, the dispatcher and the analysis gateway."""

    def __init__(self, store: IncidentStore, dispatcher: AlertDispatcher, gateway: AnalysisGateway) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.gateway = gateway

    @property
    def audit(self) -> AuditTrail:
        return self.store.audit

    @property
    def feed(self) -> ChangeFeed:
        return self.store.feed

    def report_incident(self, actor: Actor | None, incident_type: IncidentType, description: str, location: Location) -> Incident:
        return self.store.report_incident(actor, incident_type, description, location)

    def resolve_incident(self, incident_id: str, actor: Actor | None) -> Incident:
        return self.store.resolve_incident(incident_id, actor)

    def escalate_incident(self, incident_id: str, actor: Actor | None) -> Incident:
        return self.store.escalate_incident(incident_id, actor)

    def delete_incident(self, incident_id: str, actor: Actor | None) -> None:
        self.store.delete_incident(incident_id, actor)

    def find_nearby_helpers(
        self, latitude: float, longitude: float, radius_km: float | None, actor: Actor | None
    ) -> list[NearbyHelper]:
        # Checked on the claimed role here; the store checks again on the stored role.
        require(actor, Capability.VIEW_HELPERS)
        return self.store.find_nearby_helpers(latitude, longitude, radius_km, actor)

    def generate_alert(self, channel: AlertChannel, incident: Incident, helper: Helper, actor: Actor | None) -> AlertLink:
        return self.dispatcher.generate_alert(channel, incident, helper, actor)

    def generate_bulk_alerts(self, incident: Incident, actor: Actor | None, radius_km: float | None = None) -> BulkAlertResult:
        return self.dispatcher.generate_bulk_alerts(incident, actor, radius_km)

    def mark_helper_notified(self, incident: Incident, helper: Helper, actor: Actor | None, channel: AlertChannel) -> None:
        self.dispatcher.mark_helper_notified(incident, helper, actor, channel)

    def analyze_incident(
        self,
        incident_id: str,
        incident_type: IncidentType,
        description: str,
        location_name: str | None,
        actor: Actor | None,
    ) -> AIAnalysis:
        return self.gateway.analyze_incident(incident_id, incident_type, description, location_name, actor)

    def audit_trail(self, incident_id: str, actor: Actor | None) -> list[AuditLogEntry]:
        incident = self.store.get_incident(incident_id, actor)
        if not can_view(actor, ResourceKind.AUDIT_LOG):
            raise AuthorizationError("Not allowed to view audit logs")
        return self.audit.list_for_incident(incident.id)

    def timeline(self, incident_id: str, actor: Actor | None) -> list[dict[str, Any]]:
        entries = self.audit_trail(incident_id, actor)
        return self.audit.timeline(entries)

    def close(self) -> None:
        self.gateway.close()


def build_default_system(db_path: PathLike | None = None, client: ModelClient | None = None) -> IncidentCommandSystem:
    audit = AuditTrail(db_path)
    store = IncidentStore(db_path, audit=audit, matcher=GeospatialMatcher(), feed=ChangeFeed())
    store.init_db()
    return IncidentCommandSystem(
        store=store,
        dispatcher=AlertDispatcher(store),
        gateway=AnalysisGateway(store, client=client),
    )
