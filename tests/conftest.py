import json
from pathlib import Path
from uuid import uuid4

import pytest

from aegis_ics.models import HelperRole, IncidentType, Location, Role
from aegis_ics.system import build_default_system

INCIDENT_LAT = 42.3601
INCIDENT_LNG = -71.0942

DEFAULT_REPLY = {
    "severity": "high",
    "immediateActions": ["Evacuate the lab corridor", "Send campus security", "Call the fire department"],
    "resourceRecommendations": ["Fire extinguisher", "First aid kit"],
    "reasoning": "Smoke reported near an occupied lab space.",
}


class FakeModelClient:
    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls = []
        self.closed = False

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.reply

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def model() -> FakeModelClient:
    return FakeModelClient(reply=json.dumps(DEFAULT_REPLY))


@pytest.fixture
def system(tmp_path: Path, model: FakeModelClient):
    return build_default_system(tmp_path / "aegis.db", client=model)


@pytest.fixture
def admin(system):
    return system.store.register_actor(str(uuid4()), Role.ADMIN, "admin@campus.local")


@pytest.fixture
def operator(system):
    return system.store.register_actor(str(uuid4()), Role.OPERATOR, "operator@campus.local")


@pytest.fixture
def reporter(system):
    return system.store.register_actor(str(uuid4()), Role.OPERATOR, "reporter@campus.local")


@pytest.fixture
def make_incident(system, reporter):
    def _make(actor=None, description="Smoke coming from the chemistry lab vent", incident_type=IncidentType.FIRE,
              latitude=INCIDENT_LAT, longitude=INCIDENT_LNG, name="Chemistry Building"):
        return system.report_incident(actor or reporter, incident_type, description, Location(latitude, longitude, name))

    return _make


@pytest.fixture
def analyzed_incident(system, admin, make_incident):
    incident = make_incident()
    system.analyze_incident(incident.id, incident.type, incident.description, incident.location.name, admin)
    return system.store.get_incident(incident.id, admin)


@pytest.fixture
def make_helper(system, admin):
    def _make(name="Dana Ortiz", mobile_number="+1 617 555 0142", role=HelperRole.SECURITY,
              latitude=42.3646, longitude=INCIDENT_LNG, is_active=True):
        return system.store.create_helper(admin, name, mobile_number, role, latitude, longitude, is_active=is_active)

    return _make
