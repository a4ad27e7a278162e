from __future__ import annotations

import logging
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aegis_ics.auth import decode_token
from aegis_ics.config import LOG_LEVEL
from aegis_ics.errors import AegisError, AuthenticationError, InternalError
from aegis_ics.models import Actor, AlertChannel, BulkAlertResult, HelperRole, IncidentStatus, IncidentType, Location
from aegis_ics.system import IncidentCommandSystem, build_default_system

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


app = FastAPI(title="AegisICS Incident Command API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    if getattr(app.state, "system", None) is None:
        app.state.system = build_default_system()
    else:
        app.state.system.store.init_db()


@app.on_event("shutdown")
def shutdown() -> None:
    system = getattr(app.state, "system", None)
    if system is not None:
        system.close()


@app.exception_handler(AegisError)
def aegis_error_handler(request: Request, exc: AegisError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": InternalError.public_message})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
    return JSONResponse(status_code=400, content={"error": f"Invalid {field}: {first.get('msg', 'bad value')}"})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": InternalError.public_message})


def get_system(request: Request) -> IncidentCommandSystem:
    return request.app.state.system


def get_current_actor(
    authorization: str = Header(default=""),
    system: IncidentCommandSystem = Depends(get_system),
) -> Actor:
    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Unauthorized: Missing or invalid authorization header")
    claims = decode_token(authorization.replace("Bearer ", "", 1))
    actor = system.store.get_actor(claims.sub)
    if actor is None:
        raise AuthenticationError("Unknown user")
    return actor


class IncidentIn(BaseModel):
    type: IncidentType
    description: str
    latitude: float
    longitude: float
    location_name: str | None = None


class AnalyzeIn(BaseModel):
    type: IncidentType | None = None
    description: str | None = None
    location_name: str | None = None


class AlertIn(BaseModel):
    helper_id: str
    channel: AlertChannel


class BulkAlertIn(BaseModel):
    radius_km: float | None = None


class NotifiedIn(BaseModel):
    channel: AlertChannel


class HelperIn(BaseModel):
    name: str = Field(min_length=1)
    mobile_number: str
    role: HelperRole
    latitude: float
    longitude: float
    is_active: bool = True


class HelperPatch(BaseModel):
    name: str | None = None
    mobile_number: str | None = None
    role: HelperRole | None = None
    latitude: float | None = None
    longitude: float | None = None
    is_active: bool | None = None


def _bulk_to_dict(result: BulkAlertResult) -> dict[str, Any]:
    return {
        "alertsGenerated": result.alerts_generated,
        "helpers": [
            {
                **item.helper.to_dict(),
                "distance_km": round(item.distance_km, 2),
                "links": {channel.value: link for channel, link in item.links.items()},
            }
            for item in result.helpers
        ],
        "mapsLink": result.maps_link,
        "timestamp": result.timestamp,
        "radiusKm": result.radius_km,
        "message": result.message,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/incidents")
def create_incident(
    body: IncidentIn,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    incident = system.report_incident(
        actor,
        body.type,
        body.description,
        Location(body.latitude, body.longitude, body.location_name),
    )
    background_tasks.add_task(system.gateway.analyze_reported, incident, actor)
    return incident.to_dict()


@app.get("/incidents")
def list_incidents(
    status: IncidentStatus | None = None,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    return [incident.to_dict() for incident in system.store.list_incidents(actor, status)]


@app.get("/incidents/{incident_id}")
def get_incident(incident_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    return system.store.get_incident(incident_id, actor).to_dict()


@app.delete("/incidents/{incident_id}")
def delete_incident(incident_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    system.delete_incident(incident_id, actor)
    return {"ok": True, "incident_id": incident_id}


@app.post("/incidents/{incident_id}/resolve")
def resolve_incident(incident_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    return system.resolve_incident(incident_id, actor).to_dict()


@app.post("/incidents/{incident_id}/escalate")
def escalate_incident(incident_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    return system.escalate_incident(incident_id, actor).to_dict()


@app.post("/incidents/{incident_id}/analyze")
def analyze_incident(
    incident_id: str,
    body: AnalyzeIn | None = None,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    body = body or AnalyzeIn()
    incident = system.store.get_incident(incident_id, actor)
    analysis = system.analyze_incident(
        incident.id,
        body.type or incident.type,
        body.description if body.description is not None else incident.description,
        body.location_name if body.location_name is not None else incident.location.name,
        actor,
    )
    return {"success": True, "analysis": analysis.to_dict()}


@app.get("/incidents/{incident_id}/audit-logs")
def incident_audit_logs(incident_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    return system.timeline(incident_id, actor)


@app.post("/incidents/{incident_id}/alerts")
def create_alert(
    incident_id: str,
    body: AlertIn,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    incident = system.store.get_incident(incident_id, actor)
    helper = system.store.get_helper(actor, body.helper_id)
    alert = system.generate_alert(body.channel, incident, helper, actor)
    return {
        "success": True,
        "channel": alert.channel.value,
        "helperId": alert.helper_id,
        "helperName": alert.helper_name,
        "link": alert.link,
        "mapsLink": alert.maps_link,
        "message": alert.message,
    }


@app.post("/incidents/{incident_id}/alerts/bulk")
def create_bulk_alerts(
    incident_id: str,
    body: BulkAlertIn | None = None,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    incident = system.store.get_incident(incident_id, actor)
    result = system.generate_bulk_alerts(incident, actor, body.radius_km if body else None)
    return {"success": True, **_bulk_to_dict(result)}


@app.post("/incidents/{incident_id}/helpers/{helper_id}/notified")
def helper_notified(
    incident_id: str,
    helper_id: str,
    body: NotifiedIn,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    incident = system.store.get_incident(incident_id, actor)
    helper = system.store.get_helper(actor, helper_id)
    system.mark_helper_notified(incident, helper, actor, body.channel)
    return {"ok": True}


@app.get("/helpers")
def list_helpers(
    active_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    return [helper.to_dict() for helper in system.store.list_helpers(actor, active_only=active_only)]


@app.get("/helpers/nearby")
def nearby_helpers(
    latitude: float,
    longitude: float,
    radius_km: float | None = None,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    matches = system.find_nearby_helpers(latitude, longitude, radius_km, actor)
    return [{**match.helper.to_dict(), "distance_km": round(match.distance_km, 2)} for match in matches]


@app.post("/helpers")
def create_helper(body: HelperIn, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    helper = system.store.create_helper(
        actor,
        name=body.name,
        mobile_number=body.mobile_number,
        role=body.role,
        latitude=body.latitude,
        longitude=body.longitude,
        is_active=body.is_active,
    )
    return helper.to_dict()


@app.patch("/helpers/{helper_id}")
def update_helper(
    helper_id: str,
    body: HelperPatch,
    actor: Actor = Depends(get_current_actor),
    system: IncidentCommandSystem = Depends(get_system),
):
    return system.store.update_helper(actor, helper_id, **body.model_dump(exclude_unset=True)).to_dict()


@app.delete("/helpers/{helper_id}")
def delete_helper(helper_id: str, actor: Actor = Depends(get_current_actor), system: IncidentCommandSystem = Depends(get_system)):
    system.store.delete_helper(actor, helper_id)
    return {"ok": True, "helper_id": helper_id}
