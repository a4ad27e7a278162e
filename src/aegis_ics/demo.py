from __future__ import annotations

import json
import tempfile
from pathlib import Path
from uuid import uuid4

from aegis_ics.models import AlertChannel, HelperRole, IncidentType, Location, Role
from aegis_ics.system import build_default_system


class CannedModelClient:
    """Answers every analysis request with the same reply, without network access."""

    def __init__(self, reply: dict) -> None:
        self.reply = reply

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        return "```json\n" + json.dumps(self.reply) + "\n```"

    def close(self) -> None:
        pass


def main() -> None:
    reply = {
        "severity": "critical",
        "immediateActions": [
            "Evacuate the east wing of the engineering building",
            "Dispatch campus fire marshal",
            "Keep stairwell B clear for responders",
        ],
        "resourceRecommendations": ["Fire extinguishers", "First aid team"],
        "reasoning": "Smoke on an occupied floor with people unable to leave.",
    }

    with tempfile.TemporaryDirectory() as tmp:
        system = build_default_system(Path(tmp) / "demo.db", client=CannedModelClient(reply))
        admin = system.store.register_actor(str(uuid4()), Role.ADMIN, "admin@campus.local")

        for name, phone, role, lat, lng in [
            ("Dana Ortiz", "+1 617 555 0142", HelperRole.SECURITY, 42.3646, -71.0942),
            ("Lee Park", "+1 617 555 0199", HelperRole.MEDICAL, 42.3621, -71.0901),
            ("Sam Reyes", "+1 617 555 0107", HelperRole.VOLUNTEER, 42.3871, -71.0942),
        ]:
            system.store.create_helper(admin, name, phone, role, lat, lng)

        incident = system.report_incident(
            admin,
            IncidentType.FIRE,
            "Heavy smoke on the third floor, two students trapped near stairwell B.",
            Location(42.3601, -71.0942, "Engineering Building, East Wing"),
        )
        analysis = system.analyze_incident(incident.id, incident.type, incident.description, incident.location.name, admin)
        incident = system.store.get_incident(incident.id, admin)

        print("=== AegisICS Incident ===")
        print(f"Incident: {incident.id} ({incident.type.value})")
        print(f"Severity: {analysis.severity.value.upper()}")
        print(f"Reasoning: {analysis.reasoning}")
        print("\nImmediate actions:")
        for action in analysis.immediate_actions:
            print(f" - {action}")

        result = system.generate_bulk_alerts(incident, admin, radius_km=2.0)
        print(f"\n{result.message} (radius {result.radius_km} km)")
        for item in result.helpers:
            print(f" - {item.helper.name}: {item.distance_km:.2f} km")
            print(f"   {item.links[AlertChannel.CALL]}")

        system.resolve_incident(incident.id, admin)
        print("\nTimeline:")
        for entry in system.timeline(incident.id, admin):
            details = ", ".join(f"{d['label']}: {d['value']}" for d in entry["details"])
            print(f" {entry['icon']} {entry['label']}  {details}")

        system.close()


if __name__ == "__main__":
    main()
