"""Append-only audit trail.

Entries are only ever inserted; the table carries triggers that abort any
UPDATE or DELETE. Writers that mutate other state pass their own connection
so the entry commits or rolls back together with the mutation.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable
from uuid import uuid4

from aegis_ics.db import PathLike, get_conn, now_iso, parse_ts, transaction
from aegis_ics.models import AuditAction, AuditLogEntry

logger = logging.getLogger(__name__)

CONTACT_KEYS = {"helper_phone", "mobile_number", "phone"}

ACTION_LABELS = {
    AuditAction.INCIDENT_CREATED: "Incident Created",
    AuditAction.INCIDENT_STATUS_CHANGED: "Status Changed",
    AuditAction.INCIDENT_DELETED: "Incident Deleted",
    AuditAction.AI_ANALYSIS_COMPLETED: "AI Analysis Completed",
    AuditAction.AI_ANALYSIS_FAILED: "AI Analysis Failed",
    AuditAction.CALL_INITIATED: "Call Initiated",
    AuditAction.WHATSAPP_ALERT_GENERATED: "WhatsApp Alert Sent",
    AuditAction.SMS_ALERT_GENERATED: "SMS Alert Sent",
    AuditAction.BULK_EMERGENCY_ALERTS_GENERATED: "Bulk Alerts Generated",
    AuditAction.HELPER_NOTIFIED: "Helper Notified",
}

ACTION_ICONS = {
    AuditAction.INCIDENT_CREATED: "🆕",
    AuditAction.INCIDENT_STATUS_CHANGED: "🔄",
    AuditAction.INCIDENT_DELETED: "🗑️",
    AuditAction.AI_ANALYSIS_COMPLETED: "🤖",
    AuditAction.AI_ANALYSIS_FAILED: "❌",
    AuditAction.CALL_INITIATED: "📞",
    AuditAction.WHATSAPP_ALERT_GENERATED: "💬",
    AuditAction.SMS_ALERT_GENERATED: "📱",
    AuditAction.BULK_EMERGENCY_ALERTS_GENERATED: "📢",
    AuditAction.HELPER_NOTIFIED: "👤",
}

UNKNOWN_DETAILS = [("Details", "details recorded")]


def mask_phone(value: str) -> str:
    """Replace every digit except the last four with ``*``."""
    digits_seen = sum(ch.isdigit() for ch in value)
    masked = []
    for ch in value:
        if ch.isdigit():
            masked.append("*" if digits_seen > 4 else ch)
            digits_seen -= 1
        else:
            masked.append(ch)
    return "".join(masked)


def scrub_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    clean = dict(metadata or {})
    for key in CONTACT_KEYS.intersection(clean):
        if clean[key] is not None:
            clean[key] = mask_phone(str(clean[key]))
    return clean


def describe_metadata(metadata: dict[str, Any] | None) -> list[tuple[str, str]]:
    """Human-readable (label, value) pairs for the timeline."""
    if not metadata:
        return []

    items = []
    if metadata.get("severity"):
        items.append(("Severity", str(metadata["severity"]).upper()))
    if metadata.get("incident_type"):
        items.append(("Type", str(metadata["incident_type"])))
    if metadata.get("helper_name"):
        items.append(("Helper", str(metadata["helper_name"])))
    if metadata.get("helpers_count") is not None:
        items.append(("Helpers Notified", str(metadata["helpers_count"])))
    if metadata.get("radius_km") is not None:
        items.append(("Radius", f"{metadata['radius_km']} km"))
    if metadata.get("old_status") and metadata.get("new_status"):
        items.append(("Status Change", f"{metadata['old_status']} → {metadata['new_status']}"))

    return items or list(UNKNOWN_DETAILS)


def _row_to_entry(row: sqlite3.Row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        incident_id=row["incident_id"],
        action=AuditAction(row["action"]),
        actor_id=row["actor_id"],
        actor_email=row["actor_email"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=parse_ts(row["created_at"]),
    )


class AuditTrail:
    def __init__(self, db_path: PathLike | None = None) -> None:
        self.db_path = db_path

    def append(
        self,
        conn: sqlite3.Connection,
        action: AuditAction,
        incident_id: str | None = None,
        actor_id: str | None = None,
        actor_email: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid4()),
            incident_id=incident_id,
            action=AuditAction(action),
            actor_id=actor_id,
            actor_email=actor_email,
            metadata=scrub_metadata(metadata),
            created_at=parse_ts(now_iso()),
        )
        conn.execute(
            "INSERT INTO audit_logs (id,incident_id,action,actor_id,actor_email,metadata,created_at) VALUES (?,?,?,?,?,?,?)",
            (
                entry.id,
                entry.incident_id,
                entry.action.value,
                entry.actor_id,
                entry.actor_email,
                json.dumps(entry.metadata, default=str),
                entry.created_at.isoformat(),
            ),
        )
        logger.debug("audit %s incident=%s actor=%s", entry.action.value, incident_id, actor_id)
        return entry

    def record(
        self,
        action: AuditAction,
        incident_id: str | None = None,
        actor_id: str | None = None,
        actor_email: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Append in a transaction of its own."""
        with transaction(self.db_path) as conn:
            return self.append(conn, action, incident_id, actor_id, actor_email, metadata)

    def list_for_incident(self, incident_id: str) -> list[AuditLogEntry]:
        with get_conn(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM audit_logs WHERE incident_id=? ORDER BY created_at DESC, rowid DESC",
                (incident_id,),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_recent(self, limit: int = 300) -> list[AuditLogEntry]:
        with get_conn(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM audit_logs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    @staticmethod
    def timeline(entries: Iterable[AuditLogEntry]) -> list[dict[str, Any]]:
        """Entries decorated with the label, icon and details shown on the dashboard."""
        return [
            {
                **entry.to_dict(),
                "label": ACTION_LABELS[entry.action],
                "icon": ACTION_ICONS[entry.action],
                "details": [{"label": label, "value": value} for label, value in describe_metadata(entry.metadata)],
            }
            for entry in entries
        ]
