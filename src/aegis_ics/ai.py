from __future__ import annotations

import logging
import re
from typing import Protocol

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError

from aegis_ics.config import AI_GATEWAY_API_KEY, AI_GATEWAY_URL, AI_MODEL, AI_TIMEOUT_SECONDS
from aegis_ics.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    UpstreamError,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
)
from aegis_ics.models import Actor, AIAnalysis, AuditAction, Incident, IncidentType, Role, Severity
from aegis_ics.store import IncidentStore
from aegis_ics.validation import LOCATION_MAX, parse_enum, sanitize_text, validate_description, validate_uuid

logger = logging.getLogger(__name__)

SERVICE_ACTOR = Actor(id="aegis-analysis-service", role=Role.SERVICE)

FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

SYSTEM_PROMPT = """You are the analysis assistant of AegisICS, an incident command system for smart campuses.
You analyze reported emergencies and give campus security and emergency response teams actionable guidance.

For every incident provide:
1. A severity classification (low, medium, high, critical)
2. 3-5 immediate response actions
3. Resource deployment recommendations
4. A brief reasoning for the assessment

Be concise and professional. Life safety comes first.

Classification guidelines:
- CRITICAL: immediate threat to life, active shooter, major fire, mass casualty
- HIGH: serious injury, significant property damage, escalating situation
- MEDIUM: minor injuries, contained threats, infrastructure issues affecting safety
- LOW: minor incidents, non-urgent maintenance, informational reports"""

FALLBACK_REASONING = "Unable to fully analyze. Defaulting to medium priority for assessment."


def build_user_prompt(incident_type: IncidentType, description: str, location_name: str) -> str:
    return (
        "Analyze this campus incident:\n\n"
        f"Type: {incident_type.value.upper()}\n"
        f"Location: {location_name}\n"
        f"Description: {description}\n\n"
        "Respond with JSON only, in this format:\n"
        "{\n"
        '  "severity": "low|medium|high|critical",\n'
        '  "immediateActions": ["action1", "action2", "action3"],\n'
        '  "resourceRecommendations": ["resource1", "resource2"],\n'
        '  "reasoning": "Brief explanation of severity assessment"\n'
        "}"
    )


class AnalysisPayload(BaseModel):
    severity: str
    immediate_actions: list[str] = Field(alias="immediateActions")
    resource_recommendations: list[str] = Field(alias="resourceRecommendations")
    reasoning: str


def fallback_analysis() -> AIAnalysis:
    return AIAnalysis(
        severity=Severity.MEDIUM,
        immediate_actions=[
            "Dispatch nearest available responder to the location",
            "Secure the immediate area",
            "Gather additional information from witnesses",
        ],
        resource_recommendations=["Security personnel", "First aid kit if needed"],
        reasoning=FALLBACK_REASONING,
    )


def normalize_severity(value: str) -> Severity:
    try:
        return Severity(value.strip().lower())
    except ValueError:
        return Severity.MEDIUM


def parse_analysis(content: str | None) -> tuple[AIAnalysis, bool]:
    """Return the parsed analysis and whether the fallback was substituted."""
    text = content or ""
    match = FENCE_RE.search(text)
    raw = (match.group(1) if match else text).strip()
    try:
        payload = AnalysisPayload.model_validate_json(raw)
    except PayloadError as exc:
        logger.warning("Failed to parse model response, using fallback analysis: %s", exc.errors()[:1])
        return fallback_analysis(), True

    analysis = AIAnalysis(
        severity=normalize_severity(payload.severity),
        immediate_actions=payload.immediate_actions,
        resource_recommendations=payload.resource_recommendations,
        reasoning=payload.reasoning,
    )
    return analysis, False


class ModelClient(Protocol):
    def complete(self, system_prompt: str, user_prompt: str) -> str: ...

    def close(self) -> None: ...


class ChatCompletionsClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        url: str = AI_GATEWAY_URL,
        api_key: str = AI_GATEWAY_API_KEY,
        model: str = AI_MODEL,
        timeout: float = AI_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.model = model
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise UpstreamError("AI gateway API key is not configured")

        try:
            response = self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "temperature": 0.3,
                },
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"AI gateway unreachable: {exc}") from exc

        if response.status_code == 429:
            logger.error("AI gateway rate limit exceeded")
            raise UpstreamRateLimited("Rate limits exceeded, please try again later.")
        if response.status_code == 402:
            logger.error("AI gateway credits exhausted")
            raise UpstreamQuotaExhausted("AI credits exhausted. Please add credits to continue.")
        if response.is_error:
            logger.error("AI gateway error %s: %s", response.status_code, response.text[:500])
            raise UpstreamError(f"AI gateway error: {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("Malformed AI gateway response") from exc
        if not content:
            raise UpstreamError("No content in AI response")
        return content

    def close(self) -> None:
        self._client.close()


class AnalysisGateway:
    """Enriches incidents with severity and recommendations.

    The caller must be able to read the incident before the model is called.
    The result is written back with the service identity, whatever the
    caller's own rights on the record.
    """

    def __init__(self, store: IncidentStore, client: ModelClient | None = None, service: Actor = SERVICE_ACTOR) -> None:
        self.store = store
        self.client = client or ChatCompletionsClient()
        self.service = service

    def analyze_incident(
        self,
        incident_id: str,
        incident_type: IncidentType,
        description: str,
        location_name: str | None,
        actor: Actor | None,
    ) -> AIAnalysis:
        if actor is None:
            raise AuthenticationError("Unauthorized: Missing or invalid authorization header")
        incident_id = validate_uuid(incident_id, "incidentId")
        incident_type = parse_enum(IncidentType, incident_type, "incident type")
        description = validate_description(description)

        try:
            self.store.get_incident(incident_id, actor)
        except AuthorizationError as exc:
            raise NotFoundError("Incident not found or access denied") from exc

        location = sanitize_text(location_name, LOCATION_MAX) or "Unknown"
        logger.info("Analyzing incident %s: %s - %s...", incident_id, incident_type.value, description[:50])

        try:
            content = self.client.complete(SYSTEM_PROMPT, build_user_prompt(incident_type, description, location))
        except (UpstreamRateLimited, UpstreamQuotaExhausted, UpstreamError) as exc:
            self.store.audit.record(
                AuditAction.AI_ANALYSIS_FAILED,
                incident_id=incident_id,
                actor_id=actor.id,
                actor_email=actor.email,
                metadata={"reason": type(exc).__name__, "incident_type": incident_type.value},
            )
            raise

        analysis, fallback = parse_analysis(content)
        self.store.record_analysis(incident_id, analysis, self.service, requested_by=actor, fallback=fallback)
        logger.info("Incident %s analyzed: %s%s", incident_id, analysis.severity.value, " (fallback)" if fallback else "")
        return analysis

    def analyze_reported(self, incident: Incident, actor: Actor) -> AIAnalysis | None:
        """Background entry point after a report; failures are logged, not raised."""
        try:
            return self.analyze_incident(incident.id, incident.type, incident.description, incident.location.name, actor)
        except (UpstreamRateLimited, UpstreamQuotaExhausted) as exc:
            logger.warning("Analysis of incident %s deferred: %s", incident.id, exc.message)
        except Exception:
            logger.exception("Analysis of incident %s failed", incident.id)
        return None

    def close(self) -> None:
        self.client.close()
