"""Authorization guard.

Grants are capability sets. A role grants a fixed set and reporting an
incident grants ``MODIFY_INCIDENT`` on that incident, so "reporter" and
"admin" are two independent sources of the same capability.
"""
from __future__ import annotations

import logging
from enum import Enum

from aegis_ics.errors import AuthenticationError, AuthorizationError
from aegis_ics.models import Actor, Incident, ResourceKind, Role

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    VIEW_INCIDENT = "view_incident"
    MODIFY_INCIDENT = "modify_incident"
    DELETE_INCIDENT = "delete_incident"
    VIEW_HELPERS = "view_helpers"
    MANAGE_HELPERS = "manage_helpers"
    DISPATCH_ALERTS = "dispatch_alerts"
    WRITE_ANALYSIS = "write_analysis"


ROLE_GRANTS = {
    Role.ADMIN: frozenset(
        {
            Capability.VIEW_INCIDENT,
            Capability.MODIFY_INCIDENT,
            Capability.DELETE_INCIDENT,
            Capability.VIEW_HELPERS,
            Capability.MANAGE_HELPERS,
            Capability.DISPATCH_ALERTS,
        }
    ),
    Role.OPERATOR: frozenset({Capability.VIEW_INCIDENT}),
    Role.SERVICE: frozenset({Capability.VIEW_INCIDENT, Capability.WRITE_ANALYSIS}),
}

REPORTER_GRANTS = frozenset({Capability.MODIFY_INCIDENT})

VIEW_CAPABILITY = {
    ResourceKind.INCIDENT: Capability.VIEW_INCIDENT,
    ResourceKind.HELPER: Capability.VIEW_HELPERS,
    ResourceKind.AUDIT_LOG: Capability.VIEW_INCIDENT,
}


def capabilities(actor: Actor, incident: Incident | None = None) -> frozenset[Capability]:
    granted = ROLE_GRANTS[actor.role]
    if incident is not None and incident.reported_by is not None and incident.reported_by == actor.id:
        granted = granted | REPORTER_GRANTS
    return granted


def can_modify(actor: Actor, incident: Incident) -> bool:
    return Capability.MODIFY_INCIDENT in capabilities(actor, incident)


def can_view(actor: Actor | None, resource_kind: ResourceKind) -> bool:
    if actor is None:
        return False
    return VIEW_CAPABILITY[resource_kind] in capabilities(actor)


def authenticate(actor: Actor | None) -> Actor:
    """Reject anonymous callers. Runs ahead of any input validation."""
    if actor is None:
        raise AuthenticationError("Authentication required")
    return actor


def require(actor: Actor | None, capability: Capability, incident: Incident | None = None) -> Actor:
    """Return the actor if it holds ``capability``, raise otherwise."""
    authenticate(actor)
    if capability not in capabilities(actor, incident):
        logger.warning(
            "Rejected %s for actor %s (role=%s) on incident %s",
            capability.value,
            actor.id,
            actor.role.value,
            incident.id if incident else "-",
        )
        raise AuthorizationError(_DENIAL_MESSAGES[capability])
    return actor


_DENIAL_MESSAGES = {
    Capability.VIEW_INCIDENT: "Not allowed to view incidents",
    Capability.MODIFY_INCIDENT: "Only the reporter or an admin can modify this incident",
    Capability.DELETE_INCIDENT: "Only admins can delete incidents",
    Capability.VIEW_HELPERS: "Admin access required to view helper information",
    Capability.MANAGE_HELPERS: "Admin access required to manage helpers",
    Capability.DISPATCH_ALERTS: "Only admins can trigger emergency alerts",
    Capability.WRITE_ANALYSIS: "Only the analysis service can write severity and analysis",
}
