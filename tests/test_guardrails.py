from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from smartmatch.domain.models import ProviderCandidate, ServiceZone
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.guardrail_service import GuardrailService, GuardrailValidationError
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.utils.config import get_settings


BASE = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        seed_demo_data=False,
        sweep_enabled=False,
        operator_token=None,
    )


def _provider(provider_id: str) -> ProviderCandidate:
    return ProviderCandidate(
        provider_id=provider_id,
        kind="freelancer",
        service_categories=("standard",),
        hourly_rate_cents=2500,
        service_zones=(ServiceZone(name="Mitte", city="Berlin", district="Mitte"),),
        rating_average=4.5,
        rating_count=12,
        reliability=0.9,
    )


def _build_services(tmp_path, filename: str, provider_ids=("prov-p",)):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    for provider_id in provider_ids:
        repository.upsert_provider(_provider(provider_id))
    clock = FakeClock(BASE)
    matching = SmartMatchService(repository=repository, settings=settings, clock=clock)
    guardrails = GuardrailService(repository=repository, settings=settings, clock=clock)
    return matching, guardrails, clock


def _create(service: SmartMatchService, booking_id: str, day: int, client_id: str = "client-1", **overrides):
    start_at = BASE + timedelta(days=day)
    return service.create_booking(
        booking_id=booking_id,
        service_category="standard",
        start_at=start_at,
        end_at=start_at + timedelta(hours=3),
        city="Berlin",
        client_id=client_id,
        **overrides,
    )


def _by_id(report):
    return {guardrail.guardrail_id: guardrail for guardrail in report.guardrails}


def test_decline_rate_flags_provider_with_three_of_four_declines(tmp_path):
    matching, guardrails, clock = _build_services(tmp_path, "decline_rate.db")
    decisions = ["declined", "accepted", "declined", "declined"]
    last_decline_at = None
    for index, decision in enumerate(decisions):
        _create(matching, f"bk-{index}", day=5 + index)
        issued = matching.start_matching(f"bk-{index}")
        clock.advance(minutes=5)
        matching.respond(issued.invitations[0].invitation_id, decision)
        if decision == "declined":
            last_decline_at = clock.now

    report = guardrails.report()
    decline_rate = _by_id(report)["provider_decline_rate"]

    assert len(decline_rate.cases) == 1
    case = decline_rate.cases[0]
    assert case.entity_id == "prov-p"
    assert case.count == 4
    assert case.ratio == pytest.approx(0.75)
    assert case.last_event_at == last_decline_at


def test_decline_rate_needs_minimum_responses(tmp_path):
    matching, guardrails, _ = _build_services(tmp_path, "decline_min.db")
    for index in range(2):
        _create(matching, f"bk-{index}", day=5 + index)
        issued = matching.start_matching(f"bk-{index}")
        matching.respond(issued.invitations[0].invitation_id, "declined")

    assert _by_id(guardrails.report())["provider_decline_rate"].cases == []


def test_post_confirmation_cancellations_flag_provider_and_client(tmp_path):
    matching, guardrails, _ = _build_services(tmp_path, "cancellations.db")
    for index, actor in enumerate(["provider", "provider", "client", "client"]):
        booking_id = f"bk-{index}"
        _create(matching, booking_id, day=5 + index, client_id="client-risky")
        matching.force_assign(booking_id, ["prov-p"])
        matching.confirm_booking(booking_id, actor_id="client-risky")
        actor_id = "prov-p" if actor == "provider" else "client-risky"
        matching.cancel_booking(booking_id, actor_kind=actor, actor_id=actor_id)

    # cancelled before confirmation: not counted
    _create(matching, "bk-early", day=12, client_id="client-risky")
    matching.cancel_booking("bk-early", actor_kind="client", actor_id="client-risky")

    report = _by_id(guardrails.report())
    provider_cases = report["provider_cancellations"].cases
    client_cases = report["client_cancellations"].cases

    assert [(case.entity_id, case.count) for case in provider_cases] == [("prov-p", 2)]
    assert [(case.entity_id, case.count) for case in client_cases] == [("client-risky", 2)]
    assert client_cases[0].last_event_at == BASE


def test_provider_cancellation_is_charged_to_the_cancelling_team_member(tmp_path):
    matching, guardrails, _ = _build_services(
        tmp_path,
        "team_cancellations.db",
        provider_ids=("prov-p", "prov-q"),
    )
    for index in range(2):
        booking_id = f"bk-{index}"
        _create(matching, booking_id, day=5 + index, required_providers=2)
        matching.force_assign(booking_id, ["prov-p", "prov-q"])
        matching.confirm_booking(booking_id, actor_id="client-1")
        matching.cancel_booking(booking_id, actor_kind="provider", actor_id="prov-q")

    provider_cases = _by_id(guardrails.report())["provider_cancellations"].cases

    assert [(case.entity_id, case.count) for case in provider_cases] == [("prov-q", 2)]


def test_clients_with_many_drafts_are_flagged(tmp_path):
    matching, guardrails, _ = _build_services(tmp_path, "drafts.db")
    for index in range(3):
        _create(matching, f"bk-heavy-{index}", day=5 + index, client_id="client-heavy", draft=True)
    for index in range(2):
        _create(matching, f"bk-light-{index}", day=5 + index, client_id="client-light", draft=True)
    matching.start_matching("bk-light-0")

    drafts = _by_id(guardrails.report())["client_drafts"]

    assert [(case.entity_id, case.count) for case in drafts.cases] == [("client-heavy", 3)]


def test_report_period_excludes_older_events(tmp_path):
    matching, guardrails, clock = _build_services(tmp_path, "period.db")
    for index in range(3):
        _create(matching, f"bk-{index}", day=5 + index, client_id="client-heavy", draft=True)

    clock.advance(days=31)
    assert _by_id(guardrails.report())["client_drafts"].cases == []

    flagged = guardrails.report(start=BASE - timedelta(days=1), end=BASE + timedelta(days=1))
    assert len(_by_id(flagged)["client_drafts"].cases) == 1


def test_inverted_period_is_rejected(tmp_path):
    _, guardrails, _ = _build_services(tmp_path, "inverted.db")
    with pytest.raises(GuardrailValidationError):
        guardrails.report(start=BASE, end=BASE - timedelta(days=1))


def test_matching_overview_counts_success_and_pending(tmp_path):
    matching, guardrails, clock = _build_services(
        tmp_path,
        "overview.db",
        provider_ids=("prov-p", "prov-q"),
    )
    _create(matching, "bk-done", day=5)
    _create(matching, "bk-open", day=6)
    _create(matching, "bk-draft", day=7, draft=True)

    issued = matching.start_matching("bk-done")
    matching.start_matching("bk-open")
    clock.advance(minutes=4)
    matching.respond(issued.invitations[0].invitation_id, "accepted")

    overview = guardrails.matching_overview()

    assert overview["total_matches"] == 2
    assert overview["successful_matches"] == 1
    assert overview["pending_matches"] == 1
    assert overview["success_rate"] == pytest.approx(0.5)
    assert overview["avg_providers_contacted"] == pytest.approx(2.0)
    assert overview["avg_first_response_minutes"] == pytest.approx(4.0)
    assert overview["avg_assignment_minutes"] == pytest.approx(4.0)
    assert overview["responses_by_status"] == {"accepted": 1, "declined": 1, "pending": 2}
