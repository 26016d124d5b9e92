from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from smartmatch.domain.models import BookingStatus, ProviderCandidate, ServiceZone
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.guardrail_service import GuardrailService, GuardrailValidationError
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.utils.config import get_settings


# a Monday; BASE + 5 days is a Saturday
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


def _provider(provider_id: str, kind: str = "freelancer", offers_eco: bool = False) -> ProviderCandidate:
    return ProviderCandidate(
        provider_id=provider_id,
        kind=kind,
        service_categories=("standard", "final"),
        hourly_rate_cents=2500,
        offers_eco=offers_eco,
        service_zones=(ServiceZone(name="Mitte", city="Berlin", district="Mitte"),),
        rating_average=4.5,
        rating_count=12,
        reliability=0.9,
    )


def _build_services(tmp_path, filename: str, providers=()):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    for provider in providers:
        repository.upsert_provider(provider)
    clock = FakeClock(BASE)
    matching = SmartMatchService(repository=repository, settings=settings, clock=clock)
    guardrails = GuardrailService(repository=repository, settings=settings, clock=clock)
    return matching, guardrails, clock


def _create(service: SmartMatchService, booking_id: str, *, hours_ahead: float, **overrides):
    start_at = BASE + timedelta(hours=hours_ahead)
    payload = {
        "booking_id": booking_id,
        "service_category": "standard",
        "start_at": start_at,
        "end_at": start_at + timedelta(hours=3),
        "city": "Hamburg",
        "postal_code": "20095",
        "client_id": "client-1",
    }
    payload.update(overrides)
    return service.create_booking(**payload)


def _assigned(service: SmartMatchService, booking_id: str, provider_id: str, *, hours_ahead: float, **overrides):
    _create(service, booking_id, hours_ahead=hours_ahead, **overrides)
    outcome = service.force_assign(booking_id, [provider_id])
    assert outcome.ok


def _policies(report):
    return {policy.policy_id: policy for policy in report.policies}


def _scenarios(report):
    return {scenario.scenario_id: scenario for scenario in report.scenarios}


def test_policy_metrics_measure_first_assignments(tmp_path):
    matching, guardrails, _ = _build_services(
        tmp_path,
        "policies.db",
        providers=(
            _provider("comp-1", kind="company", offers_eco=True),
            _provider("free-1"),
        ),
    )
    # Berlin by city, and by postal code outside the city name
    _assigned(matching, "berlin-ok", "comp-1", hours_ahead=72, city="Berlin", postal_code="10117")
    _assigned(matching, "berlin-postal", "free-1", hours_ahead=72, city="Potsdam", postal_code="10115")
    _create(matching, "hamburg-open", hours_ahead=96)

    _assigned(matching, "eco-ok", "comp-1", hours_ahead=24, eco_preference="bio")
    _assigned(matching, "eco-freelancer", "free-1", hours_ahead=24, eco_preference="bio")
    _create(matching, "eco-open", hours_ahead=48, eco_preference="bio")

    for index, hour in enumerate((0, 4, 8)):
        _assigned(matching, f"sat-{index}", "free-1", hours_ahead=120 + hour)
    _assigned(matching, "sat-company", "comp-1", hours_ahead=120)
    _assigned(matching, "sun-0", "free-1", hours_ahead=144)
    _create(matching, "eco-draft", hours_ahead=48, eco_preference="bio", draft=True)

    policies = _policies(guardrails.policy_metrics())

    berlin = policies["berlin_companies"]
    assert berlin.impacted_bookings == 2
    assert berlin.breaches == 1
    assert berlin.compliance_rate == pytest.approx(0.5)

    eco = policies["eco_alignment"]
    assert eco.impacted_bookings == 3
    assert eco.breaches == 2
    assert eco.compliance_rate == pytest.approx(1 / 3)

    weekend = policies["freelancer_weekend_cap"]
    assert weekend.policy_type == "limit"
    assert weekend.impacted_bookings == 4
    assert weekend.breaches == 1
    assert weekend.compliance_rate == pytest.approx(0.75)
    assert "1 freelancers concerned" in weekend.highlights


def test_policy_metrics_without_bookings_have_no_rate(tmp_path):
    _, guardrails, _ = _build_services(tmp_path, "policies_empty.db")

    report = guardrails.policy_metrics()

    assert [policy.policy_id for policy in report.policies] == [
        "berlin_companies",
        "eco_alignment",
        "freelancer_weekend_cap",
    ]
    for policy in report.policies:
        assert policy.impacted_bookings == 0
        assert policy.compliance_rate is None
        assert policy.breaches == 0
        assert policy.highlights == ["no bookings in scope"]


def test_scenario_metrics_split_by_lead_time_and_service(tmp_path):
    matching, guardrails, _ = _build_services(
        tmp_path,
        "scenarios.db",
        providers=(_provider("prov-p"), _provider("prov-q")),
    )
    _assigned(matching, "bk-standard", "prov-p", hours_ahead=120, city="Berlin")
    matching.confirm_booking("bk-standard", actor_id="client-1")
    _create(matching, "bk-special", hours_ahead=144, service_category="final")
    _create(matching, "bk-urgent", hours_ahead=10, city="Berlin")
    issued = matching.start_matching("bk-urgent")
    assert len(issued.invitations) == 2
    _create(matching, "bk-tomorrow", hours_ahead=36)
    _create(matching, "bk-draft", hours_ahead=144, service_category="final", draft=True)

    scenarios = _scenarios(guardrails.scenario_metrics())

    standard = scenarios["standard"]
    assert standard.bookings == 2
    assert standard.success_rate == pytest.approx(0.5)
    assert standard.avg_invitations == pytest.approx(0.0)
    assert standard.avg_lead_hours == pytest.approx(132.0)

    # 36 hours ahead is still short notice
    urgent = scenarios["urgent"]
    assert urgent.bookings == 2
    assert urgent.success_rate == pytest.approx(0.0)
    assert urgent.avg_invitations == pytest.approx(1.0)
    assert urgent.avg_lead_hours == pytest.approx(23.0)

    special = scenarios["special"]
    assert special.bookings == 1
    assert special.avg_lead_hours == pytest.approx(144.0)


def test_scenario_metrics_without_bookings(tmp_path):
    _, guardrails, _ = _build_services(tmp_path, "scenarios_empty.db")

    for scenario in guardrails.scenario_metrics().scenarios:
        assert scenario.bookings == 0
        assert scenario.success_rate == 0.0
        assert scenario.avg_invitations is None
        assert scenario.avg_lead_hours is None


def _seed_history(tmp_path, filename: str):
    matching, guardrails, clock = _build_services(
        tmp_path,
        filename,
        providers=(_provider("prov-p"), _provider("prov-q")),
    )
    _create(matching, "h-1", hours_ahead=120, city="Berlin", postal_code="10115")
    first = matching.start_matching("h-1")
    accepted = first.invitations[0]
    matching.respond(accepted.invitation_id, "accepted")

    clock.advance(minutes=1)
    _create(matching, "h-2", hours_ahead=144, city="Berlin", postal_code="10243", service_category="final")
    second = matching.start_matching("h-2")
    matching.respond(second.invitations[0].invitation_id, "declined")

    clock.advance(minutes=1)
    _create(matching, "h-3", hours_ahead=168)
    _create(matching, "h-draft", hours_ahead=168, city="Berlin", postal_code="10115", draft=True)
    return guardrails, accepted.provider_id


def _ids(listing):
    return [item.booking_id for item in listing.items]


def test_history_lists_newest_first_with_invitation_summary(tmp_path):
    guardrails, accepted_provider = _seed_history(tmp_path, "history.db")

    listing = guardrails.history()

    assert listing.total == 3
    assert listing.page == 1
    assert listing.page_size == 25
    assert _ids(listing) == ["h-3", "h-2", "h-1"]
    items = {item.booking_id: item for item in listing.items}

    assigned = items["h-1"]
    assert assigned.result == "assigned"
    assert assigned.provider_id == accepted_provider
    assert assigned.status == BookingStatus.PENDING_CLIENT
    assert (assigned.invitations.total, assigned.invitations.accepted, assigned.invitations.declined) == (2, 1, 1)
    assert assigned.invitations.pending == 0

    open_booking = items["h-2"]
    assert open_booking.result == "unassigned"
    assert open_booking.provider_id is None
    assert open_booking.invitations.declined == 1
    assert open_booking.invitations.pending == 1
    assert open_booking.last_invitation_at == BASE + timedelta(minutes=1)

    untouched = items["h-3"]
    assert untouched.invitations.total == 0
    assert untouched.last_invitation_at is None


def test_history_filters(tmp_path):
    guardrails, _ = _seed_history(tmp_path, "history_filters.db")

    assert _ids(guardrails.history(service_category="final")) == ["h-2"]
    assert _ids(guardrails.history(postal_code="10")) == ["h-2", "h-1"]
    assert _ids(guardrails.history(result="assigned")) == ["h-1"]
    assert _ids(guardrails.history(result="unassigned")) == ["h-3", "h-2"]
    assert _ids(guardrails.history(invitation_status="declined")) == ["h-2", "h-1"]
    assert _ids(guardrails.history(invitation_status="pending")) == ["h-2"]
    # LIKE wildcards in the prefix are literal
    assert _ids(guardrails.history(postal_code="%")) == []


def test_history_pagination_and_validation(tmp_path):
    guardrails, _ = _seed_history(tmp_path, "history_pages.db")

    second_page = guardrails.history(page=2, page_size=2)
    assert _ids(second_page) == ["h-1"]
    assert second_page.total == 3
    assert second_page.page == 2

    assert guardrails.history(page=0).page == 1
    assert guardrails.history(page_size=500).page_size == 100
    assert guardrails.history(page=5, page_size=2).items == []

    with pytest.raises(GuardrailValidationError):
        guardrails.history(result="maybe")
    with pytest.raises(GuardrailValidationError):
        guardrails.history(invitation_status="lost")
