from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Iterator
from uuid import uuid4

from aegis_ics.audit import AuditTrail
from aegis_ics.db import PathLike, get_conn, init_db, now_iso, parse_ts, transaction
from aegis_ics.errors import AuthorizationError, InternalError, InvalidTransitionError, NotFoundError, ValidationError
from aegis_ics.intelligence import GeospatialMatcher
from aegis_ics.models import (
    Actor,
    AIAnalysis,
    AuditAction,
    Helper,
    HelperRole,
    Incident,
    IncidentChange,
    IncidentStatus,
    IncidentType,
    Location,
    NearbyHelper,
    ResourceKind,
    Role,
    Severity,
)
from aegis_ics.policy import Capability, authenticate, can_view, require
from aegis_ics.validation import (
    LOCATION_MAX,
    NAME_MAX,
    parse_enum,
    phone_digits,
    sanitize_text,
    validate_coordinates,
    validate_description,
    validate_uuid,
)

logger = logging.getLogger(__name__)

# Source states from which each target state may be reached.
ALLOWED_SOURCES = {
    IncidentStatus.ACTIVE: (),
    IncidentStatus.RESOLVED: (IncidentStatus.ACTIVE, IncidentStatus.ESCALATED),
    IncidentStatus.ESCALATED: (IncidentStatus.ACTIVE,),
}

HELPER_FIELDS = {"name", "mobile_number", "role", "latitude", "longitude", "is_active"}


class ChangeFeed:
    """In-process notification of incident inserts, updates and deletes.

    Subscribers should treat a change as a signal to re-fetch; delivery
    follows commit order only.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[IncidentChange], None]] = []

    def subscribe(self, callback: Callable[[IncidentChange], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, change: IncidentChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                logger.exception("Change subscriber failed for %s %s", change.event, change.incident_id)


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        type=IncidentType(row["type"]),
        description=row["description"],
        location=Location(row["latitude"], row["longitude"], row["location_name"]),
        status=IncidentStatus(row["status"]),
        severity=Severity(row["severity"]) if row["severity"] else None,
        ai_analysis=AIAnalysis.from_dict(json.loads(row["ai_analysis"])) if row["ai_analysis"] else None,
        reported_by=row["reported_by"],
        resolved_by=row["resolved_by"],
        resolved_at=parse_ts(row["resolved_at"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def _row_to_helper(row: sqlite3.Row) -> Helper:
    return Helper(
        id=row["id"],
        name=row["name"],
        mobile_number=row["mobile_number"],
        role=HelperRole(row["role"]),
        location=Location(row["latitude"], row["longitude"]),
        is_active=bool(row["is_active"]),
        created_by=row["created_by"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


class IncidentStore:
    def __init__(
        self,
        db_path: PathLike | None = None,
        audit: AuditTrail | None = None,
        matcher: GeospatialMatcher | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.db_path = db_path
        self.audit = audit or AuditTrail(db_path)
        self.matcher = matcher or GeospatialMatcher()
        self.feed = feed or ChangeFeed()

    def init_db(self) -> None:
        init_db(self.db_path)

    @contextmanager
    def unit_of_work(self) -> Iterator[sqlite3.Connection]:
        """Authorize, mutate and audit in one transaction."""
        try:
            with transaction(self.db_path) as conn:
                yield conn
        except sqlite3.Error as exc:
            logger.exception("Storage failure")
            raise InternalError(f"Storage failure: {exc}") from exc

    # Actors

    def register_actor(self, actor_id: str, role: Role, email: str | None = None) -> Actor:
        role = parse_enum(Role, role, "role")
        if role is Role.SERVICE:
            raise ValidationError("The service role cannot be assigned to a user")
        with self.unit_of_work() as conn:
            conn.execute(
                """
                INSERT INTO users (id,email,role,created_at) VALUES (?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET email=excluded.email, role=excluded.role
                """,
                (actor_id, email, role.value, now_iso()),
            )
        return Actor(id=actor_id, role=role, email=email)

    def get_actor(self, actor_id: str) -> Actor | None:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT id,email,role FROM users WHERE id=?", (actor_id,)).fetchone()
        if not row:
            return None
        return Actor(id=row["id"], role=Role(row["role"]), email=row["email"])

    @staticmethod
    def _stored_role(conn: sqlite3.Connection, actor_id: str) -> Role | None:
        row = conn.execute("SELECT role FROM users WHERE id=?", (actor_id,)).fetchone()
        return Role(row["role"]) if row else None

    def has_role(self, actor_id: str, role: Role) -> bool:
        with get_conn(self.db_path) as conn:
            return self._stored_role(conn, actor_id) is role

    def authorize_at_boundary(self, conn: sqlite3.Connection, actor: Actor | None, capability: Capability) -> Actor:
        """Re-evaluate the policy against the stored role, not the claimed one."""
        require(actor, capability)
        stored = self._stored_role(conn, actor.id)
        if stored is None:
            logger.warning("Unknown actor %s reached the data boundary", actor.id)
            raise AuthorizationError("Actor is not registered")
        return require(Actor(id=actor.id, role=stored, email=actor.email), capability)

    # Incidents

    def _load(self, conn: sqlite3.Connection, incident_id: str) -> Incident:
        row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
        if not row:
            raise NotFoundError("Incident not found or access denied")
        return _row_to_incident(row)

    def report_incident(
        self,
        actor: Actor | None,
        incident_type: Any,
        description: Any,
        location: Location,
    ) -> Incident:
        authenticate(actor)
        incident_type = parse_enum(IncidentType, incident_type, "incident type")
        description = validate_description(description)
        latitude, longitude = validate_coordinates(location.latitude, location.longitude)
        location_name = sanitize_text(location.name, LOCATION_MAX) or None

        incident_id = str(uuid4())
        now = now_iso()
        with self.unit_of_work() as conn:
            conn.execute(
                """
                INSERT INTO incidents (id,type,description,latitude,longitude,location_name,status,reported_by,created_at,updated_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    incident_id,
                    incident_type.value,
                    description,
                    latitude,
                    longitude,
                    location_name,
                    IncidentStatus.ACTIVE.value,
                    actor.id,
                    now,
                    now,
                ),
            )
            self.audit.append(
                conn,
                AuditAction.INCIDENT_CREATED,
                incident_id=incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata={"incident_type": incident_type.value, "location_name": location_name},
            )
            incident = self._load(conn, incident_id)

        logger.info("Incident %s reported by %s (%s)", incident_id, actor.id, incident_type.value)
        self.feed.publish(IncidentChange("INSERT", incident_id))
        return incident

    def get_incident(self, incident_id: str, actor: Actor | None) -> Incident:
        require(actor, Capability.VIEW_INCIDENT)
        incident_id = validate_uuid(incident_id, "incidentId")
        with get_conn(self.db_path) as conn:
            return self._load(conn, incident_id)

    def list_incidents(self, actor: Actor | None, status: IncidentStatus | None = None) -> list[Incident]:
        require(actor, Capability.VIEW_INCIDENT)
        query = "SELECT * FROM incidents"
        params: tuple = ()
        if status is not None:
            query += " WHERE status=?"
            params = (parse_enum(IncidentStatus, status, "status").value,)
        query += " ORDER BY created_at DESC, rowid DESC"
        with get_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_incident(r) for r in rows]

    def resolve_incident(self, incident_id: str, actor: Actor | None) -> Incident:
        return self._transition(incident_id, actor, IncidentStatus.RESOLVED)

    def escalate_incident(self, incident_id: str, actor: Actor | None) -> Incident:
        return self._transition(incident_id, actor, IncidentStatus.ESCALATED)

    def _transition(self, incident_id: str, actor: Actor | None, target: IncidentStatus) -> Incident:
        authenticate(actor)
        incident_id = validate_uuid(incident_id, "incidentId")

        with self.unit_of_work() as conn:
            current = self._load(conn, incident_id)
            require(actor, Capability.MODIFY_INCIDENT, current)

            if current.status is target:
                logger.info("Incident %s already %s, nothing to do", incident_id, target.value)
                return current
            if current.status not in ALLOWED_SOURCES[target]:
                raise InvalidTransitionError(f"Cannot move a {current.status.value} incident to {target.value}")

            now = now_iso()
            resolved_by = actor.id if target is IncidentStatus.RESOLVED else None
            resolved_at = now if target is IncidentStatus.RESOLVED else None
            cursor = conn.execute(
                "UPDATE incidents SET status=?, resolved_by=?, resolved_at=?, updated_at=? WHERE id=? AND status=?",
                (target.value, resolved_by, resolved_at, now, incident_id, current.status.value),
            )
            if cursor.rowcount != 1:
                raise InternalError(f"Incident {incident_id} changed during transition")

            updated = self._load(conn, incident_id)
            if updated.status is not current.status:
                self.audit.append(
                    conn,
                    AuditAction.INCIDENT_STATUS_CHANGED,
                    incident_id=incident_id,
                    actor_id=updated.resolved_by or actor.id,
                    actor_email=actor.email,
                    metadata={
                        "old_status": current.status.value,
                        "new_status": updated.status.value,
                        "changed_at": now,
                    },
                )

        logger.info("Incident %s %s -> %s by %s", incident_id, current.status.value, target.value, actor.id)
        self.feed.publish(IncidentChange("UPDATE", incident_id))
        return updated

    def delete_incident(self, incident_id: str, actor: Actor | None) -> None:
        require(actor, Capability.DELETE_INCIDENT)
        incident_id = validate_uuid(incident_id, "incidentId")
        with self.unit_of_work() as conn:
            incident = self._load(conn, incident_id)
            conn.execute("DELETE FROM incidents WHERE id=?", (incident_id,))
            self.audit.append(
                conn,
                AuditAction.INCIDENT_DELETED,
                incident_id=incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata={"incident_type": incident.type.value, "status": incident.status.value},
            )
        logger.info("Incident %s deleted by %s", incident_id, actor.id)
        self.feed.publish(IncidentChange("DELETE", incident_id))

    def record_analysis(
        self,
        incident_id: str,
        analysis: AIAnalysis,
        service: Actor,
        requested_by: Actor | None = None,
        fallback: bool = False,
    ) -> Incident:
        """Persist severity and analysis. Only the service identity may write."""
        require(service, Capability.WRITE_ANALYSIS)
        with self.unit_of_work() as conn:
            self._load(conn, incident_id)
            now = now_iso()
            conn.execute(
                "UPDATE incidents SET severity=?, ai_analysis=?, updated_at=? WHERE id=?",
                (analysis.severity.value, json.dumps(analysis.to_dict()), now, incident_id),
            )
            self.audit.append(
                conn,
                AuditAction.AI_ANALYSIS_COMPLETED,
                incident_id=incident_id,
                actor_id=requested_by.id if requested_by else service.id,
                actor_email=requested_by.email if requested_by else None,
                metadata={"severity": analysis.severity.value, "fallback": fallback},
            )
            incident = self._load(conn, incident_id)
        self.feed.publish(IncidentChange("UPDATE", incident_id))
        return incident

    # Helpers

    def _helper_values(self, changes: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if "name" in changes:
            name = sanitize_text(changes["name"], NAME_MAX).strip()
            if not name:
                raise ValidationError("Helper name is required")
            values["name"] = name
        if "mobile_number" in changes:
            phone_digits(changes["mobile_number"])
            values["mobile_number"] = changes["mobile_number"].strip()
        if "role" in changes:
            values["role"] = parse_enum(HelperRole, changes["role"], "helper role").value
        if "latitude" in changes or "longitude" in changes:
            if "latitude" not in changes or "longitude" not in changes:
                raise ValidationError("Latitude and longitude must be updated together")
            values["latitude"], values["longitude"] = validate_coordinates(changes["latitude"], changes["longitude"])
        if "is_active" in changes:
            if not isinstance(changes["is_active"], bool):
                raise ValidationError("is_active must be a boolean")
            values["is_active"] = int(changes["is_active"])
        return values

    def create_helper(
        self,
        actor: Actor | None,
        name: str,
        mobile_number: str,
        role: Any,
        latitude: float,
        longitude: float,
        is_active: bool = True,
    ) -> Helper:
        authenticate(actor)
        values = self._helper_values(
            {
                "name": name,
                "mobile_number": mobile_number,
                "role": role,
                "latitude": latitude,
                "longitude": longitude,
                "is_active": is_active,
            }
        )
        helper_id = str(uuid4())
        now = now_iso()
        with self.unit_of_work() as conn:
            self.authorize_at_boundary(conn, actor, Capability.MANAGE_HELPERS)
            conn.execute(
                """
                INSERT INTO helpers (id,name,mobile_number,role,latitude,longitude,is_active,created_by,created_at,updated_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    helper_id,
                    values["name"],
                    values["mobile_number"],
                    values["role"],
                    values["latitude"],
                    values["longitude"],
                    values["is_active"],
                    actor.id,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM helpers WHERE id=?", (helper_id,)).fetchone()
        logger.info("Helper %s created by %s", helper_id, actor.id)
        return _row_to_helper(row)

    def update_helper(self, actor: Actor | None, helper_id: str, **changes: Any) -> Helper:
        authenticate(actor)
        helper_id = validate_uuid(helper_id, "helperId")
        unknown = set(changes) - HELPER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown helper fields: {', '.join(sorted(unknown))}")
        values = self._helper_values(changes)

        with self.unit_of_work() as conn:
            self.authorize_at_boundary(conn, actor, Capability.MANAGE_HELPERS)
            if not conn.execute("SELECT id FROM helpers WHERE id=?", (helper_id,)).fetchone():
                raise NotFoundError("Helper not found")
            if values:
                assignments = ", ".join(f"{column}=?" for column in values)
                conn.execute(
                    f"UPDATE helpers SET {assignments}, updated_at=? WHERE id=?",
                    (*values.values(), now_iso(), helper_id),
                )
            row = conn.execute("SELECT * FROM helpers WHERE id=?", (helper_id,)).fetchone()
        return _row_to_helper(row)

    def deactivate_helper(self, actor: Actor | None, helper_id: str) -> Helper:
        return self.update_helper(actor, helper_id, is_active=False)

    def delete_helper(self, actor: Actor | None, helper_id: str) -> None:
        authenticate(actor)
        helper_id = validate_uuid(helper_id, "helperId")
        with self.unit_of_work() as conn:
            self.authorize_at_boundary(conn, actor, Capability.MANAGE_HELPERS)
            cursor = conn.execute("DELETE FROM helpers WHERE id=?", (helper_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Helper not found")
        logger.info("Helper %s deleted by %s", helper_id, actor.id)

    def get_helper(self, actor: Actor | None, helper_id: str) -> Helper:
        authenticate(actor)
        helper_id = validate_uuid(helper_id, "helperId")
        with get_conn(self.db_path) as conn:
            self.authorize_at_boundary(conn, actor, Capability.VIEW_HELPERS)
            row = conn.execute("SELECT * FROM helpers WHERE id=?", (helper_id,)).fetchone()
        if not row:
            raise NotFoundError("Helper not found")
        return _row_to_helper(row)

    def list_helpers(self, actor: Actor | None, active_only: bool = False) -> list[Helper]:
        query = "SELECT * FROM helpers"
        if active_only:
            query += " WHERE is_active = 1"
        with get_conn(self.db_path) as conn:
            self.authorize_at_boundary(conn, actor, Capability.VIEW_HELPERS)
            rows = conn.execute(query + " ORDER BY name").fetchall()
        return [_row_to_helper(r) for r in rows]

    def find_nearby_helpers(
        self,
        latitude: float,
        longitude: float,
        radius_km: float | None,
        actor: Actor | None,
    ) -> list[NearbyHelper]:
        """Active helpers within the clamped radius, nearest first.

        The admin check runs here as well as in any calling service, against
        the role stored for the actor, so a direct call with a forged role
        returns nothing.
        """
        authenticate(actor)
        latitude, longitude = validate_coordinates(latitude, longitude)
        radius = self.matcher.clamp_radius(radius_km)
        with get_conn(self.db_path) as conn:
            stored = self._stored_role(conn, actor.id)
            boundary_actor = Actor(id=actor.id, role=stored, email=actor.email) if stored else None
            if not can_view(boundary_actor, ResourceKind.HELPER):
                logger.warning("Rejected helper lookup for actor %s", actor.id)
                raise AuthorizationError("Admin access required to view helper information")
            rows = conn.execute("SELECT * FROM helpers WHERE is_active = 1").fetchall()
        return self.matcher.rank(latitude, longitude, [_row_to_helper(r) for r in rows], radius)
