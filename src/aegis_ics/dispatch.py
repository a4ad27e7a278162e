"""Alert generation for call, SMS and chat channels.

Everything embedded in an outbound link is validated first and sanitised
second; no link is built and nothing is audited when validation fails.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import quote
from zoneinfo import ZoneInfo

from aegis_ics.audit import mask_phone
from aegis_ics.config import ALERT_TIMEZONE
from aegis_ics.errors import ValidationError
from aegis_ics.models import (
    Actor,
    AlertChannel,
    AlertLink,
    AuditAction,
    BulkAlertResult,
    Helper,
    HelperAlerts,
    Incident,
    Severity,
)
from aegis_ics.policy import Capability, require
from aegis_ics.store import IncidentStore
from aegis_ics.validation import (
    CONTROL_CHARS_RE,
    DESCRIPTION_MAX,
    LOCATION_MAX,
    NAME_MAX,
    SUMMARY_MAX,
    TYPE_MAX,
    parse_enum,
    parse_severity,
    phone_digits,
    sanitize_text,
    validate_coordinates,
    validate_uuid,
)

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 160
SMS_SUMMARY_CHARS = 50
CHAT_SUMMARY_FALLBACK_CHARS = 100
NO_HELPERS_MESSAGE = "No nearby helpers found within the specified radius"

SEVERITY_MARKERS = {
    Severity.CRITICAL: "🚨",
    Severity.HIGH: "⚠️",
    Severity.MEDIUM: "📢",
    Severity.LOW: "📢",
}

CHANNEL_ACTIONS = {
    AlertChannel.CALL: AuditAction.CALL_INITIATED,
    AlertChannel.SMS: AuditAction.SMS_ALERT_GENERATED,
    AlertChannel.CHAT: AuditAction.WHATSAPP_ALERT_GENERATED,
}


def maps_link(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={round(latitude, 6)},{round(longitude, 6)}"


@dataclass(frozen=True)
class IncidentContent:
    incident_id: str
    incident_type: str
    severity: Severity
    latitude: float
    longitude: float
    location_name: str
    description: str
    summary: str
    maps_link: str

    @property
    def type_label(self) -> str:
        return self.incident_type[:1].upper() + self.incident_type[1:]


@dataclass(frozen=True)
class ContactTarget:
    helper_id: str
    name: str
    dial: str
    digits: str


def prepare_incident(incident: Incident) -> IncidentContent:
    incident_id = validate_uuid(incident.id, "incidentId")
    latitude, longitude = validate_coordinates(incident.location.latitude, incident.location.longitude)
    if incident.severity is None:
        raise ValidationError("Incident severity is required before alerting helpers")
    severity = parse_severity(incident.severity)
    if len(incident.description or "") > DESCRIPTION_MAX:
        raise ValidationError(f"Description too long (max {DESCRIPTION_MAX} characters)")

    description = sanitize_text(incident.description, DESCRIPTION_MAX)
    if incident.ai_analysis and incident.ai_analysis.reasoning:
        summary = sanitize_text(incident.ai_analysis.reasoning, SUMMARY_MAX)
    else:
        summary = description[:CHAT_SUMMARY_FALLBACK_CHARS]

    return IncidentContent(
        incident_id=incident_id,
        incident_type=sanitize_text(incident.type.value, TYPE_MAX, "unknown"),
        severity=severity,
        latitude=latitude,
        longitude=longitude,
        location_name=sanitize_text(incident.location.name, LOCATION_MAX, "See map link"),
        description=description,
        summary=summary,
        maps_link=maps_link(latitude, longitude),
    )


def prepare_helper(helper: Helper) -> ContactTarget:
    helper_id = validate_uuid(helper.id, "helperId")
    digits = phone_digits(helper.mobile_number)
    dial = CONTROL_CHARS_RE.sub("", helper.mobile_number).replace(" ", "")
    return ContactTarget(
        helper_id=helper_id,
        name=sanitize_text(helper.name, NAME_MAX, "Unknown"),
        dial=dial,
        digits=digits,
    )


def sms_message(content: IncidentContent) -> str:
    marker = SEVERITY_MARKERS[content.severity]
    head = f"{marker} AEGIS: {content.type_label} - {content.severity.value.upper()}. "
    tail = f" Location: {content.maps_link}"
    limit = min(SMS_SUMMARY_CHARS, SMS_MAX_LENGTH - len(head) - len(tail))

    summary = content.summary
    if len(summary) > limit:
        summary = summary[: limit - 3].rstrip() + "..." if limit >= 3 else ""
    return (head + summary + tail)[:SMS_MAX_LENGTH]


def chat_message(content: IncidentContent, distance_km: float, timestamp: str) -> str:
    marker = SEVERITY_MARKERS[content.severity]
    return (
        f"{marker} *AEGIS EMERGENCY ALERT*\n\n"
        f"*Type:* {content.type_label}\n"
        f"*Severity:* {content.severity.value.upper()}\n"
        f"*Location:* {content.location_name}\n\n"
        f"*Summary:* {content.summary}\n\n"
        f"📍 *Google Maps:* {content.maps_link}\n\n"
        f"⏰ *Time:* {timestamp}\n\n"
        f"_You are {distance_km:.2f} km away. Please respond immediately if available._"
    )


def _call_link(content: IncidentContent, target: ContactTarget, distance_km: float, timestamp: str):
    return f"tel:{quote(target.dial, safe='+-')}", None


def _sms_link(content: IncidentContent, target: ContactTarget, distance_km: float, timestamp: str):
    message = sms_message(content)
    return f"sms:{quote(target.dial, safe='+-')}?body={quote(message, safe='')}", message


def _chat_link(content: IncidentContent, target: ContactTarget, distance_km: float, timestamp: str):
    message = chat_message(content, distance_km, timestamp)
    return f"https://wa.me/{target.digits}?text={quote(message, safe='')}", message


LINK_BUILDERS = {
    AlertChannel.CALL: _call_link,
    AlertChannel.SMS: _sms_link,
    AlertChannel.CHAT: _chat_link,
}


class AlertDispatcher:
    def __init__(
        self,
        store: IncidentStore,
        clock: Callable[[], datetime] | None = None,
        timezone_name: str = ALERT_TIMEZONE,
    ) -> None:
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.zone = ZoneInfo(timezone_name)

    def _timestamp(self) -> str:
        return self.clock().astimezone(self.zone).strftime("%Y-%m-%d %H:%M %Z")

    def generate_alert(self, channel: AlertChannel, incident: Incident, helper: Helper, actor: Actor | None) -> AlertLink:
        require(actor, Capability.DISPATCH_ALERTS)
        channel = parse_enum(AlertChannel, channel, "channel")
        content = prepare_incident(incident)
        target = prepare_helper(helper)

        distance = self.store.matcher.distance_km(
            content.latitude, content.longitude, helper.location.latitude, helper.location.longitude
        )
        link, message = LINK_BUILDERS[channel](content, target, distance, self._timestamp())

        metadata = {
            "helper_id": target.helper_id,
            "helper_name": target.name,
            "helper_role": helper.role.value,
            "severity": content.severity.value,
            "incident_type": content.incident_type,
            "channel": channel.value,
        }
        if channel is AlertChannel.SMS:
            metadata["helper_phone"] = mask_phone(target.dial)
        if channel is AlertChannel.CHAT:
            metadata["alert_type"] = "whatsapp_deep_link"

        with self.store.unit_of_work() as conn:
            self.store.authorize_at_boundary(conn, actor, Capability.DISPATCH_ALERTS)
            self.store.audit.append(
                conn,
                CHANNEL_ACTIONS[channel],
                incident_id=content.incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata=metadata,
            )

        logger.info("%s alert generated for incident %s to helper %s", channel.value, content.incident_id, target.helper_id)
        return AlertLink(
            channel=channel,
            helper_id=target.helper_id,
            helper_name=target.name,
            link=link,
            maps_link=content.maps_link,
            message=message,
        )

    def generate_bulk_alerts(
        self,
        incident: Incident,
        actor: Actor | None,
        radius_km: float | None = None,
    ) -> BulkAlertResult:
        """Links on every channel for every active helper within the radius.

        The whole batch is returned at once; pacing the opening of links is
        up to the caller.
        """
        require(actor, Capability.DISPATCH_ALERTS)
        content = prepare_incident(incident)
        radius = self.store.matcher.clamp_radius(radius_km)

        nearby = self.store.find_nearby_helpers(content.latitude, content.longitude, radius, actor)
        targets = [(match, prepare_helper(match.helper)) for match in nearby]
        timestamp = self._timestamp()

        helpers = []
        for match, target in targets:
            links: dict[AlertChannel, str] = {}
            for channel, build in LINK_BUILDERS.items():
                links[channel], _ = build(content, target, match.distance_km, timestamp)
            helpers.append(HelperAlerts(helper=match.helper, distance_km=match.distance_km, links=links))

        if helpers:
            message = f"Emergency alerts generated for {len(helpers)} nearby helpers"
        else:
            message = NO_HELPERS_MESSAGE

        with self.store.unit_of_work() as conn:
            self.store.audit.append(
                conn,
                AuditAction.BULK_EMERGENCY_ALERTS_GENERATED,
                incident_id=content.incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata={
                    "severity": content.severity.value,
                    "incident_type": content.incident_type,
                    "helpers_count": len(helpers),
                    "radius_km": radius,
                    "helper_ids": [target.helper_id for _, target in targets],
                },
            )

        logger.info("Bulk alerts for incident %s: %d helpers within %.1f km", content.incident_id, len(helpers), radius)
        return BulkAlertResult(
            alerts_generated=len(helpers),
            helpers=helpers,
            maps_link=content.maps_link,
            timestamp=timestamp,
            radius_km=radius,
            message=message,
        )

    def mark_helper_notified(
        self,
        incident: Incident,
        helper: Helper,
        actor: Actor | None,
        channel: AlertChannel,
    ) -> None:
        """Record that an admin confirmed the helper was reached."""
        require(actor, Capability.DISPATCH_ALERTS)
        channel = parse_enum(AlertChannel, channel, "channel")
        incident_id = validate_uuid(incident.id, "incidentId")
        target = prepare_helper(helper)

        with self.store.unit_of_work() as conn:
            self.store.authorize_at_boundary(conn, actor, Capability.DISPATCH_ALERTS)
            self.store.audit.append(
                conn,
                AuditAction.HELPER_NOTIFIED,
                incident_id=incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata={
                    "helper_id": target.helper_id,
                    "helper_name": target.name,
                    "channel": channel.value,
                    "incident_type": incident.type.value,
                },
            )
