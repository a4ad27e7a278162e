import json

import httpx
import pytest

from aegis_ics.ai import (
    FALLBACK_REASONING,
    SERVICE_ACTOR,
    AnalysisGateway,
    ChatCompletionsClient,
    fallback_analysis,
    parse_analysis,
)
from aegis_ics.errors import (
    AuthenticationError,
    NotFoundError,
    UpstreamError,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
    ValidationError,
)
from aegis_ics.models import AuditAction, IncidentType, Location, Severity

GATEWAY_URL = "https://gateway.test/v1/chat/completions"


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _client(handler) -> ChatCompletionsClient:
    return ChatCompletionsClient(url=GATEWAY_URL, api_key="test-key", model="test-model", transport=httpx.MockTransport(handler))


def test_parse_analysis_strips_code_fences() -> None:
    content = '```json\n{"severity": "Critical", "immediateActions": ["Evacuate"], ' \
              '"resourceRecommendations": ["Fire crew"], "reasoning": "Fire spreading"}\n```'

    analysis, fallback = parse_analysis(content)

    assert not fallback
    assert analysis.severity is Severity.CRITICAL
    assert analysis.immediate_actions == ["Evacuate"]
    assert analysis.resource_recommendations == ["Fire crew"]


def test_unknown_severity_defaults_to_medium() -> None:
    content = json.dumps({"severity": "urgent", "immediateActions": [], "resourceRecommendations": [], "reasoning": "?"})

    analysis, fallback = parse_analysis(content)

    assert not fallback
    assert analysis.severity is Severity.MEDIUM


@pytest.mark.parametrize("content", ["I cannot help with that.", "", None, '{"severity": "high"}'])
def test_unparseable_output_yields_fallback(content) -> None:
    analysis, fallback = parse_analysis(content)

    assert fallback
    assert analysis == fallback_analysis()
    assert analysis.severity is Severity.MEDIUM
    assert len(analysis.immediate_actions) == 3
    assert analysis.reasoning == FALLBACK_REASONING


def test_client_posts_chat_completion() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("ok"))

    assert _client(handler).complete("system prompt", "user prompt") == "ok"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["temperature"] == 0.3
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]


@pytest.mark.parametrize(
    "status, error",
    [(429, UpstreamRateLimited), (402, UpstreamQuotaExhausted), (500, UpstreamError), (503, UpstreamError)],
)
def test_client_maps_upstream_failures(status, error) -> None:
    client = _client(lambda request: httpx.Response(status, json={"error": "nope"}))

    with pytest.raises(error):
        client.complete("s", "u")


def test_client_rejects_empty_content_and_missing_key() -> None:
    with pytest.raises(UpstreamError, match="No content"):
        _client(lambda request: httpx.Response(200, json=_completion(""))).complete("s", "u")
    with pytest.raises(UpstreamError, match="not configured"):
        ChatCompletionsClient(url=GATEWAY_URL, api_key="").complete("s", "u")


def test_quota_message_is_surfaced() -> None:
    client = _client(lambda request: httpx.Response(402))

    with pytest.raises(UpstreamQuotaExhausted) as excinfo:
        client.complete("s", "u")
    assert excinfo.value.message == "AI credits exhausted. Please add credits to continue."


def test_analysis_is_persisted_with_service_identity(system, operator, admin, model, make_incident) -> None:
    incident = make_incident()

    analysis = system.analyze_incident(incident.id, incident.type, incident.description, incident.location.name, operator)

    stored = system.store.get_incident(incident.id, admin)
    assert analysis.severity is Severity.HIGH
    assert stored.severity is Severity.HIGH
    assert stored.ai_analysis == analysis
    assert "Location: Chemistry Building" in model.calls[0]
    [entry] = [e for e in system.audit.list_for_incident(incident.id) if e.action is AuditAction.AI_ANALYSIS_COMPLETED]
    assert entry.actor_id == operator.id
    assert entry.metadata == {"severity": "high", "fallback": False}


def test_unparseable_reply_persists_fallback(system, admin, model, make_incident) -> None:
    model.reply = "Sorry, something went wrong."
    incident = make_incident()

    analysis = system.analyze_incident(incident.id, incident.type, incident.description, None, admin)

    stored = system.store.get_incident(incident.id, admin)
    assert analysis == fallback_analysis()
    assert stored.severity is Severity.MEDIUM
    assert stored.ai_analysis.reasoning == FALLBACK_REASONING
    assert "Location: Unknown" in model.calls[0]
    [entry] = [e for e in system.audit.list_for_incident(incident.id) if e.action is AuditAction.AI_ANALYSIS_COMPLETED]
    assert entry.metadata["fallback"] is True


def test_rate_limit_is_surfaced_and_audited(system, admin, model, make_incident) -> None:
    model.error = UpstreamRateLimited("Rate limits exceeded, please try again later.")
    incident = make_incident()

    with pytest.raises(UpstreamRateLimited):
        system.analyze_incident(incident.id, incident.type, incident.description, None, admin)

    assert system.store.get_incident(incident.id, admin).severity is None
    [entry] = [e for e in system.audit.list_for_incident(incident.id) if e.action is AuditAction.AI_ANALYSIS_FAILED]
    assert entry.metadata["reason"] == "UpstreamRateLimited"


def test_checks_run_before_the_model_is_called(system, admin, model, make_incident) -> None:
    incident = make_incident()

    with pytest.raises(AuthenticationError):
        system.analyze_incident(incident.id, incident.type, incident.description, None, None)
    with pytest.raises(ValidationError, match="at least 5"):
        system.analyze_incident(incident.id, incident.type, "help", None, admin)
    with pytest.raises(ValidationError):
        system.analyze_incident(incident.id, IncidentType.FIRE, "x" * 5001, None, admin)
    with pytest.raises(NotFoundError):
        system.analyze_incident("9d1f4c2a-5b6e-4f70-8a91-b2c3d4e5f607", IncidentType.FIRE, "Smoke in hallway", None, admin)

    assert model.calls == []


def test_gateway_end_to_end_over_http(system, admin, make_incident) -> None:
    reply = {
        "severity": "low",
        "immediateActions": ["Log the report"],
        "resourceRecommendations": ["Facilities staff"],
        "reasoning": "Flickering light, no hazard.",
    }
    client = _client(lambda request: httpx.Response(200, json=_completion(json.dumps(reply))))
    gateway = AnalysisGateway(system.store, client=client)
    incident = make_incident(description="Hallway light flickering", incident_type=IncidentType.INFRASTRUCTURE)

    analysis = gateway.analyze_incident(incident.id, incident.type, incident.description, "Dorm 3", admin)

    assert analysis.severity is Severity.LOW
    assert system.store.get_incident(incident.id, admin).ai_analysis.reasoning == "Flickering light, no hazard."
    assert gateway.service == SERVICE_ACTOR


def test_shortest_accepted_report_is_analyzed(system, reporter, admin) -> None:
    incident = system.report_incident(reporter, IncidentType.FIRE, "Smoke", Location(42.3601, -71.0942))

    analysis = system.gateway.analyze_reported(incident, reporter)

    assert analysis is not None
    assert system.store.get_incident(incident.id, admin).severity is Severity.HIGH


def test_closing_the_gateway_closes_the_http_client(system) -> None:
    client = _client(lambda request: httpx.Response(200, json=_completion("ok")))
    gateway = AnalysisGateway(system.store, client=client)

    gateway.close()

    assert client._client.is_closed


def test_closing_the_system_closes_the_model_client(system, model) -> None:
    system.close()

    assert model.closed
