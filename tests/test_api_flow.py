from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from smartmatch.controllers.matching_controller import router as matching_router
from smartmatch.controllers.operator_controller import router as operator_router
from smartmatch.domain.models import ProviderCandidate, ServiceZone
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.auth_service import AuthService
from smartmatch.services.guardrail_service import GuardrailService
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.utils.config import get_settings


BASE = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
OPERATOR_TOKEN = "secret-operator-token"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _build_test_settings(tmp_path, filename: str, operator_token: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        seed_demo_data=False,
        sweep_enabled=False,
        operator_token=operator_token,
    )


def _build_test_app(tmp_path, operator_token: str) -> tuple[FastAPI, DataRepository, FakeClock]:
    settings = _build_test_settings(tmp_path, "api_flow.db", operator_token)
    repository = DataRepository(settings)
    repository.initialize_database()
    for provider_id, rating_count in (("prov-a", 30), ("prov-b", 20), ("prov-c", 10)):
        repository.upsert_provider(
            ProviderCandidate(
                provider_id=provider_id,
                kind="freelancer",
                service_categories=("standard",),
                hourly_rate_cents=2500,
                service_zones=(ServiceZone(name="Mitte", city="Berlin", district="Mitte"),),
                rating_average=4.5,
                rating_count=rating_count,
                reliability=0.9,
            )
        )

    clock = FakeClock(BASE)
    matching_service = SmartMatchService(repository=repository, settings=settings, clock=clock)
    guardrail_service = GuardrailService(repository=repository, settings=settings, clock=clock)
    auth_service = AuthService(settings=settings)

    app = FastAPI()
    app.include_router(matching_router)
    app.include_router(operator_router)
    app.state.settings = settings
    app.state.repository = repository
    app.state.matching_service = matching_service
    app.state.guardrail_service = guardrail_service
    app.state.auth_service = auth_service
    return app, repository, clock


def _booking_payload(booking_id: str, days_ahead: int = 5) -> dict:
    start_at = BASE + timedelta(days=days_ahead)
    return {
        "booking_id": booking_id,
        "client_id": "client-1",
        "service_category": "standard",
        "city": "Berlin",
        "start_at": start_at.isoformat(),
        "end_at": (start_at + timedelta(hours=3)).isoformat(),
    }


def _login(client: TestClient) -> dict[str, str]:
    response = client.post("/operator/login", json={"operator_token": OPERATOR_TOKEN})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_booking_invitation_flow_end_to_end(tmp_path):
    app, _, clock = _build_test_app(tmp_path, OPERATOR_TOKEN)

    with TestClient(app) as client:
        created = client.post("/bookings", json=_booking_payload("bk-1"))
        assert created.status_code == 201
        assert created.json()["status"] == "pending_provider"

        preview = client.get("/bookings/bk-1/preview")
        assert preview.status_code == 200
        candidates = preview.json()["candidates"]
        assert [item["provider_id"] for item in candidates] == ["prov-a", "prov-b", "prov-c"]
        assert [item["rank"] for item in candidates] == [1, 2, 3]

        issued = client.post("/bookings/bk-1/start_matching")
        assert issued.status_code == 200
        invitations = {item["provider_id"]: item for item in issued.json()["invitations"]}
        assert set(invitations) == {"prov-a", "prov-b", "prov-c"}

        clock.advance(minutes=2)
        viewed = client.post(f"/invitations/{invitations['prov-b']['invitation_id']}/view")
        assert viewed.status_code == 200
        assert viewed.json()["status"] == "viewed"

        accepted = client.post(
            f"/invitations/{invitations['prov-b']['invitation_id']}/respond",
            json={"decision": "accepted"},
        )
        assert accepted.status_code == 200
        body = accepted.json()
        assert body["assignment"]["provider_id"] == "prov-b"
        assert len(body["superseded_invitation_ids"]) == 2

        late = client.post(
            f"/invitations/{invitations['prov-a']['invitation_id']}/respond",
            json={"decision": "accepted"},
        )
        assert late.status_code == 409
        assert late.json()["detail"]["reason"] == "invitation_declined"

        confirmed = client.post("/bookings/bk-1/confirm", json={"actor_id": "client-1"})
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

        detail = client.get("/bookings/bk-1")
        assert detail.status_code == 200
        payload = detail.json()
        assert [item["provider_id"] for item in payload["assignments"]] == ["prov-b"]
        statuses = {item["provider_id"]: item["status"] for item in payload["locks"]}
        assert statuses == {"prov-a": "RELEASED", "prov-b": "CONFIRMED", "prov-c": "RELEASED"}


def test_operator_endpoints_require_login(tmp_path):
    app, _, _ = _build_test_app(tmp_path, OPERATOR_TOKEN)

    with TestClient(app) as client:
        assert client.get("/operator/config").status_code == 401
        assert client.post("/operator/login", json={"operator_token": "wrong"}).status_code == 401
        assert client.get(
            "/operator/config",
            headers={"Authorization": "Bearer not-a-session"},
        ).status_code == 401

        headers = _login(client)

        current = client.get("/operator/config", headers=headers)
        assert current.status_code == 200
        assert current.json()["version"] == 0

        updated = client.put("/operator/config", json={"fanout_size": 2}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["version"] == 1
        assert updated.json()["fanout_size"] == 2

        rejected = client.put("/operator/config", json={"weights": {"charisma": 1.0}}, headers=headers)
        assert rejected.status_code == 422

        guardrails = client.get("/operator/guardrails", headers=headers)
        assert guardrails.status_code == 200
        assert {item["guardrail_id"] for item in guardrails.json()["guardrails"]} == {
            "provider_decline_rate",
            "provider_cancellations",
            "client_drafts",
            "client_cancellations",
        }

        overview = client.get("/operator/overview", headers=headers)
        assert overview.status_code == 200
        assert overview.json()["total_matches"] == 0

        sweeps = client.post("/operator/sweeps/run", headers=headers)
        assert sweeps.status_code == 200
        assert sweeps.json() == {
            "locks_released": 0,
            "invitations_expired": 0,
            "superseded_cleaned": 0,
            "retries": 0,
            "escalations": 0,
        }


def test_force_assign_conflict_and_validation_errors(tmp_path):
    app, _, _ = _build_test_app(tmp_path, OPERATOR_TOKEN)

    with TestClient(app) as client:
        headers = _login(client)
        assert client.post("/bookings", json=_booking_payload("bk-1")).status_code == 201
        assert client.post("/bookings", json=_booking_payload("bk-2")).status_code == 201

        first = client.post(
            "/operator/bookings/bk-1/force_assign",
            json={"provider_ids": ["prov-a"], "actor_id": "operator-1"},
            headers=headers,
        )
        assert first.status_code == 200
        assert first.json()["status"] == "pending_client"

        clash = client.post(
            "/operator/bookings/bk-2/force_assign",
            json={"provider_ids": ["prov-a"]},
            headers=headers,
        )
        assert clash.status_code == 409
        assert clash.json()["detail"]["conflicting_provider_ids"] == ["prov-a"]

        no_team = client.post(
            "/operator/bookings/bk-2/assign_fallback_team",
            json={},
            headers=headers,
        )
        assert no_team.status_code == 409

        inverted = _booking_payload("bk-3")
        inverted["end_at"], inverted["start_at"] = inverted["start_at"], inverted["end_at"]
        assert client.post("/bookings", json=inverted).status_code == 422

        assert client.get("/bookings/missing").status_code == 404
        assert client.post("/bookings/missing/start_matching").status_code == 404
        assert client.post("/invitations/999/view").status_code == 404


def test_operator_metrics_and_history_endpoints(tmp_path):
    app, _, _ = _build_test_app(tmp_path, OPERATOR_TOKEN)

    with TestClient(app) as client:
        assert client.get("/operator/history").status_code == 401
        headers = _login(client)

        assert client.post("/bookings", json=_booking_payload("bk-1")).status_code == 201
        assert client.post("/bookings/bk-1/start_matching").status_code == 200
        again = client.post("/bookings/bk-1/start_matching")
        assert again.status_code == 200
        assert again.json()["invitations"] == []
        assert again.json()["outstanding"] == 3
        assert again.json()["exhausted"] is False

        assert client.post("/bookings", json=_booking_payload("bk-2", days_ahead=6)).status_code == 201
        assigned = client.post(
            "/operator/bookings/bk-2/force_assign",
            json={"provider_ids": ["prov-a"]},
            headers=headers,
        )
        assert assigned.status_code == 200

        policies = client.get("/operator/policy_metrics", headers=headers)
        assert policies.status_code == 200
        by_id = {item["policy_id"]: item for item in policies.json()["policies"]}
        assert by_id["berlin_companies"]["impacted_bookings"] == 2
        assert by_id["berlin_companies"]["breaches"] == 2
        assert by_id["eco_alignment"]["compliance_rate"] is None

        scenarios = client.get("/operator/scenario_metrics", headers=headers)
        assert scenarios.status_code == 200
        assert [item["scenario_id"] for item in scenarios.json()["scenarios"]] == [
            "standard",
            "urgent",
            "special",
        ]

        listing = client.get(
            "/operator/history",
            params={"result": "unassigned", "invitation_status": "pending"},
            headers=headers,
        )
        assert listing.status_code == 200
        body = listing.json()
        assert body["total"] == 1
        assert body["items"][0]["booking_id"] == "bk-1"
        assert body["items"][0]["invitations"] == {
            "total": 3,
            "accepted": 0,
            "declined": 0,
            "expired": 0,
            "pending": 3,
        }

        assert client.get("/operator/history", params={"result": "maybe"}, headers=headers).status_code == 422
        assert client.get(
            "/operator/history",
            params={"invitation_status": "lost"},
            headers=headers,
        ).status_code == 400
        assert client.get(
            "/operator/policy_metrics",
            params={"start": (BASE + timedelta(days=1)).isoformat(), "end": BASE.isoformat()},
            headers=headers,
        ).status_code == 400
