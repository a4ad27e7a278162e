from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IncidentType(str, Enum):
    MEDICAL = "medical"
    FIRE = "fire"
    SECURITY = "security"
    INFRASTRUCTURE = "infrastructure"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class HelperRole(str, Enum):
    SECURITY = "security"
    MEDICAL = "medical"
    VOLUNTEER = "volunteer"


class Role(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    # Carried only by the analysis gateway's service identity.
    SERVICE = "service"


class AlertChannel(str, Enum):
    CALL = "call"
    SMS = "sms"
    CHAT = "chat"


class AuditAction(str, Enum):
    INCIDENT_CREATED = "incident_created"
    INCIDENT_STATUS_CHANGED = "incident_status_changed"
    INCIDENT_DELETED = "incident_deleted"
    AI_ANALYSIS_COMPLETED = "ai_analysis_completed"
    AI_ANALYSIS_FAILED = "ai_analysis_failed"
    CALL_INITIATED = "call_initiated"
    WHATSAPP_ALERT_GENERATED = "whatsapp_alert_generated"
    SMS_ALERT_GENERATED = "sms_alert_generated"
    BULK_EMERGENCY_ALERTS_GENERATED = "bulk_emergency_alerts_generated"
    HELPER_NOTIFIED = "helper_notified"


class ResourceKind(str, Enum):
    INCIDENT = "incident"
    HELPER = "helper"
    AUDIT_LOG = "audit_log"


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    email: str | None = None


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    name: str | None = None


@dataclass(frozen=True)
class AIAnalysis:
    severity: Severity
    immediate_actions: list[str]
    resource_recommendations: list[str]
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "immediateActions": list(self.immediate_actions),
            "resourceRecommendations": list(self.resource_recommendations),
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AIAnalysis":
        return cls(
            severity=Severity(data["severity"]),
            immediate_actions=list(data.get("immediateActions", [])),
            resource_recommendations=list(data.get("resourceRecommendations", [])),
            reasoning=data.get("reasoning", ""),
        )


@dataclass(frozen=True)
class Incident:
    id: str
    type: IncidentType
    description: str
    location: Location
    status: IncidentStatus
    reported_by: str | None
    created_at: datetime
    updated_at: datetime
    severity: Severity | None = None
    ai_analysis: AIAnalysis | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "location_name": self.location.name,
            "status": self.status.value,
            "severity": self.severity.value if self.severity else None,
            "ai_analysis": self.ai_analysis.to_dict() if self.ai_analysis else None,
            "reported_by": self.reported_by,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Helper:
    id: str
    name: str
    mobile_number: str
    role: HelperRole
    location: Location
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    created_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mobile_number": self.mobile_number,
            "role": self.role.value,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class NearbyHelper:
    helper: Helper
    distance_km: float


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    action: AuditAction
    created_at: datetime
    incident_id: str | None = None
    actor_id: str | None = None
    actor_email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class IncidentChange:
    event: str
    incident_id: str


@dataclass(frozen=True)
class AlertLink:
    channel: AlertChannel
    helper_id: str
    helper_name: str
    link: str
    maps_link: str
    message: str | None = None


@dataclass(frozen=True)
class HelperAlerts:
    helper: Helper
    distance_km: float
    links: dict[AlertChannel, str]


@dataclass(frozen=True)
class BulkAlertResult:
    alerts_generated: int
    helpers: list[HelperAlerts]
    maps_link: str
    timestamp: str
    radius_km: float
    message: str
