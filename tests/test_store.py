import logging
import sqlite3
from uuid import uuid4

import pytest

from aegis_ics.ai import fallback_analysis
from aegis_ics.errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from aegis_ics.models import Actor, AuditAction, IncidentStatus, IncidentType, Location, Role


def _actions(system, incident_id):
    return [entry.action for entry in system.audit.list_for_incident(incident_id)]


def test_report_creates_active_incident_with_audit_entry(system, reporter) -> None:
    incident = system.report_incident(
        reporter, "Medical", "Student fainted in the gym", Location(42.3601, -71.0942, "Gym\x07 Hall")
    )

    assert incident.status is IncidentStatus.ACTIVE
    assert incident.type is IncidentType.MEDICAL
    assert incident.reported_by == reporter.id
    assert incident.severity is None
    assert incident.location.name == "Gym Hall"
    assert _actions(system, incident.id) == [AuditAction.INCIDENT_CREATED]


def test_report_rejects_bad_input_without_side_effects(system, reporter, admin) -> None:
    with pytest.raises(ValidationError):
        system.report_incident(reporter, IncidentType.FIRE, "Smoke", Location(91.0, 0.0))
    with pytest.raises(ValidationError):
        system.report_incident(reporter, "flood", "Water in basement", Location(42.0, -71.0))
    with pytest.raises(AuthenticationError):
        system.report_incident(None, IncidentType.FIRE, "Smoke", Location(42.0, -71.0))

    assert system.store.list_incidents(admin) == []
    assert system.audit.list_recent() == []


def test_report_description_must_be_analyzable(system, reporter, admin) -> None:
    with pytest.raises(ValidationError, match="at least 5"):
        system.report_incident(reporter, IncidentType.FIRE, "Fire", Location(42.3601, -71.0942))

    assert system.store.list_incidents(admin) == []


def test_anonymous_callers_are_rejected_before_input_checks(system) -> None:
    store = system.store

    with pytest.raises(AuthenticationError):
        system.resolve_incident("not-a-uuid", None)
    with pytest.raises(AuthenticationError):
        system.escalate_incident("not-a-uuid", None)
    with pytest.raises(AuthenticationError):
        system.delete_incident("not-a-uuid", None)
    with pytest.raises(AuthenticationError):
        store.get_incident("not-a-uuid", None)
    with pytest.raises(AuthenticationError):
        system.find_nearby_helpers(999.0, 0.0, 2, None)
    with pytest.raises(AuthenticationError):
        store.find_nearby_helpers(999.0, 0.0, 2, None)
    with pytest.raises(AuthenticationError):
        store.create_helper(None, "", "12", "firefighter", 123.0, 0.0)
    with pytest.raises(AuthenticationError):
        store.update_helper(None, "not-a-uuid", nickname="D")
    with pytest.raises(AuthenticationError):
        store.get_helper(None, "not-a-uuid")
    with pytest.raises(AuthenticationError):
        store.delete_helper(None, "not-a-uuid")


def test_reporter_resolves_own_incident(system, reporter, make_incident) -> None:
    incident = make_incident()

    resolved = system.resolve_incident(incident.id, reporter)

    assert resolved.status is IncidentStatus.RESOLVED
    assert resolved.resolved_by == reporter.id
    assert resolved.resolved_at is not None
    [change] = [e for e in system.audit.list_for_incident(incident.id) if e.action is AuditAction.INCIDENT_STATUS_CHANGED]
    assert change.actor_id == reporter.id
    assert change.metadata["old_status"] == "active"
    assert change.metadata["new_status"] == "resolved"
    assert "changed_at" in change.metadata


def test_resolving_twice_writes_one_status_change(system, admin, make_incident) -> None:
    incident = make_incident()

    system.resolve_incident(incident.id, admin)
    again = system.resolve_incident(incident.id, admin)

    assert again.status is IncidentStatus.RESOLVED
    assert _actions(system, incident.id).count(AuditAction.INCIDENT_STATUS_CHANGED) == 1


def test_other_operator_cannot_change_incident(system, operator, admin, make_incident) -> None:
    incident = make_incident()

    with pytest.raises(AuthorizationError):
        system.resolve_incident(incident.id, operator)
    with pytest.raises(AuthorizationError):
        system.escalate_incident(incident.id, operator)

    stored = system.store.get_incident(incident.id, admin)
    assert stored.status is IncidentStatus.ACTIVE
    assert stored.updated_at == incident.updated_at
    assert _actions(system, incident.id) == [AuditAction.INCIDENT_CREATED]


def test_escalated_incident_can_still_be_resolved(system, admin, reporter, make_incident) -> None:
    incident = make_incident()

    escalated = system.escalate_incident(incident.id, reporter)
    resolved = system.resolve_incident(incident.id, admin)

    assert escalated.status is IncidentStatus.ESCALATED
    assert escalated.resolved_at is None
    assert resolved.status is IncidentStatus.RESOLVED
    assert resolved.resolved_by == admin.id


def test_resolved_incident_cannot_be_escalated(system, admin, make_incident) -> None:
    incident = make_incident()
    system.resolve_incident(incident.id, admin)

    with pytest.raises(InvalidTransitionError):
        system.escalate_incident(incident.id, admin)
    assert system.store.get_incident(incident.id, admin).status is IncidentStatus.RESOLVED


def test_unknown_or_malformed_incident_ids(system, admin) -> None:
    with pytest.raises(NotFoundError):
        system.resolve_incident(str(uuid4()), admin)
    with pytest.raises(ValidationError):
        system.resolve_incident("not-a-uuid", admin)


def test_failed_audit_write_rolls_back_transition(system, admin, make_incident, monkeypatch) -> None:
    incident = make_incident()

    def broken_append(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(system.store.audit, "append", broken_append)
    with pytest.raises(InternalError):
        system.resolve_incident(incident.id, admin)
    monkeypatch.undo()

    stored = system.store.get_incident(incident.id, admin)
    assert stored.status is IncidentStatus.ACTIVE
    assert stored.resolved_by is None


def test_delete_incident_is_admin_only_and_history_survives(system, admin, reporter, make_incident) -> None:
    incident = make_incident()

    with pytest.raises(AuthorizationError):
        system.delete_incident(incident.id, reporter)
    system.delete_incident(incident.id, admin)

    with pytest.raises(NotFoundError):
        system.store.get_incident(incident.id, admin)
    assert _actions(system, incident.id) == [AuditAction.INCIDENT_DELETED, AuditAction.INCIDENT_CREATED]


def test_analysis_write_back_requires_service_identity(system, admin, make_incident) -> None:
    incident = make_incident()

    with pytest.raises(AuthorizationError):
        system.store.record_analysis(incident.id, fallback_analysis(), admin)
    assert system.store.get_incident(incident.id, admin).severity is None


def test_change_feed_signals_inserts_and_updates(system, admin, make_incident) -> None:
    seen = []
    unsubscribe = system.feed.subscribe(seen.append)

    incident = make_incident()
    system.resolve_incident(incident.id, admin)
    unsubscribe()
    system.delete_incident(incident.id, admin)

    assert [(c.event, c.incident_id) for c in seen] == [("INSERT", incident.id), ("UPDATE", incident.id)]


def test_service_role_cannot_be_registered(system) -> None:
    with pytest.raises(ValidationError):
        system.store.register_actor("svc-2", Role.SERVICE)


def test_nearby_helpers_for_scenario(system, admin, make_helper) -> None:
    near = make_helper(name="A", latitude=42.3646)
    make_helper(name="B", latitude=42.3871)
    make_helper(name="C", latitude=42.3611, is_active=False)

    matches = system.find_nearby_helpers(42.3601, -71.0942, 2, admin)

    assert [m.helper.id for m in matches] == [near.id]


def test_nearby_helpers_rejects_non_admins(system, operator, make_helper) -> None:
    make_helper()

    with pytest.raises(AuthorizationError, match="Admin access required"):
        system.find_nearby_helpers(42.3601, -71.0942, 2, operator)
    with pytest.raises(AuthenticationError):
        system.find_nearby_helpers(42.3601, -71.0942, 2, None)


def test_forged_role_is_rejected_at_data_boundary(system, operator, make_helper) -> None:
    make_helper()
    forged = Actor(id=operator.id, role=Role.ADMIN, email=operator.email)
    stranger = Actor(id="not-registered", role=Role.ADMIN)

    with pytest.raises(AuthorizationError):
        system.find_nearby_helpers(42.3601, -71.0942, 2, forged)
    with pytest.raises(AuthorizationError):
        system.store.list_helpers(forged)
    with pytest.raises(AuthorizationError, match="not registered"):
        system.store.create_helper(stranger, "Eve", "+1 617 555 0000", "volunteer", 42.36, -71.09)


def test_helper_lookup_is_checked_in_service_and_at_boundary(system, operator, make_helper, caplog) -> None:
    make_helper()
    spoofed = Actor(id="not-registered", role=Role.ADMIN)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(AuthorizationError):
            system.find_nearby_helpers(42.3601, -71.0942, 2, operator)
    assert "Rejected view_helpers for actor" in caplog.text
    assert "Rejected helper lookup" not in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING):
        with pytest.raises(AuthorizationError):
            system.find_nearby_helpers(42.3601, -71.0942, 2, spoofed)
    assert "Rejected view_helpers" not in caplog.text
    assert "Rejected helper lookup for actor not-registered" in caplog.text


def test_helper_crud(system, admin, make_helper) -> None:
    helper = make_helper()

    moved = system.store.update_helper(admin, helper.id, latitude=42.37, longitude=-71.1, name="Dana O.")
    off_duty = system.store.deactivate_helper(admin, helper.id)

    assert moved.name == "Dana O."
    assert moved.location.latitude == 42.37
    assert not off_duty.is_active
    assert system.store.list_helpers(admin, active_only=True) == []
    assert system.store.get_helper(admin, helper.id).is_active is False

    system.store.delete_helper(admin, helper.id)
    with pytest.raises(NotFoundError):
        system.store.get_helper(admin, helper.id)


def test_helper_validation(system, admin, operator, make_helper) -> None:
    with pytest.raises(ValidationError):
        make_helper(mobile_number="12")
    with pytest.raises(ValidationError):
        make_helper(latitude=123.0)
    with pytest.raises(ValidationError):
        make_helper(role="firefighter")

    helper = make_helper()
    with pytest.raises(ValidationError):
        system.store.update_helper(admin, helper.id, latitude=10.0)
    with pytest.raises(ValidationError):
        system.store.update_helper(admin, helper.id, nickname="D")
    with pytest.raises(AuthorizationError):
        system.store.update_helper(operator, helper.id, name="Mallory")


def test_has_role_reads_stored_role(system, admin, operator) -> None:
    assert system.store.has_role(admin.id, Role.ADMIN)
    assert not system.store.has_role(operator.id, Role.ADMIN)
    assert not system.store.has_role("nobody", Role.OPERATOR)
