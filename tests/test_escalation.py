from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from smartmatch.domain.models import (
    BookingStatus,
    InvitationStatus,
    ProviderCandidate,
    ProviderTeam,
    ServiceZone,
    TeamMember,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.escalation_service import build_team_model, solve_team_model
from smartmatch.services.guardrail_service import GuardrailService
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
        team_solver_max_time_seconds=5,
        team_solver_workers=1,
    )


def _provider(provider_id: str, rating_average: float) -> ProviderCandidate:
    return ProviderCandidate(
        provider_id=provider_id,
        kind="freelancer",
        service_categories=("standard",),
        hourly_rate_cents=2500,
        service_zones=(ServiceZone(name="Mitte", city="Berlin", district="Mitte"),),
        rating_average=rating_average,
        rating_count=15,
        reliability=0.9,
    )


def _team(team_id: str, member_ids: list[str]) -> ProviderTeam:
    return ProviderTeam(
        team_id=team_id,
        name=team_id.replace("-", " ").title(),
        preferred_size=len(member_ids),
        members=tuple(
            TeamMember(provider_id, is_lead=index == 0, order_index=index)
            for index, provider_id in enumerate(member_ids)
        ),
    )


def _build_service(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    for provider_id, rating in (("prov-a", 4.9), ("prov-b", 4.2), ("prov-c", 4.6), ("prov-d", 4.4)):
        repository.upsert_provider(_provider(provider_id, rating))
    repository.upsert_team(_team("team-x", ["prov-a", "prov-b", "prov-c"]))
    repository.upsert_team(_team("team-y", ["prov-d", "prov-c"]))
    clock = FakeClock(BASE)
    service = SmartMatchService(repository=repository, settings=settings, clock=clock)
    return service, repository, clock


def _create(service: SmartMatchService, booking_id: str, *, hours_ahead: float = 120, **overrides):
    start_at = BASE + timedelta(hours=hours_ahead)
    payload = {
        "booking_id": booking_id,
        "service_category": "standard",
        "start_at": start_at,
        "end_at": start_at + timedelta(hours=3),
        "city": "Berlin",
        "client_id": "client-1",
    }
    payload.update(overrides)
    return service.create_booking(**payload)


def test_expired_round_retries_with_relaxed_ceiling(tmp_path):
    service, repository, clock = _build_service(tmp_path, "retry.db")
    _create(service, "bk-1")
    first = service.start_matching("bk-1")
    assert len(first.invitations) == 3

    clock.advance(minutes=16)
    service.run_sweeps()

    booking = service.get_booking("bk-1")
    assert booking.matching_retry_count == 1
    assert booking.fallback_requested_at is None
    pending = [
        item for item in repository.list_booking_invitations("bk-1") if item.status == InvitationStatus.PENDING
    ]
    assert len(pending) == 3
    # the provider left out of round one goes first in round two
    assert "prov-b" in {item.provider_id for item in pending}


def test_fallback_team_attached_at_threshold(tmp_path):
    service, repository, clock = _build_service(tmp_path, "fallback.db")
    _create(service, "bk-1", required_providers=2)
    service.start_matching("bk-1")

    clock.advance(minutes=16)
    service.run_sweeps()
    clock.advance(minutes=16)
    service.run_sweeps()

    booking = service.get_booking("bk-1")
    assert booking.matching_retry_count == 2
    assert booking.fallback_requested_at == clock.now
    assert booking.fallback_escalated_at is None
    assert booking.fallback_team_candidate_id is not None

    candidate = repository.get_fallback_team_candidate(booking.fallback_team_candidate_id)
    teams = {"team-x": {"prov-a", "prov-b", "prov-c"}, "team-y": {"prov-c", "prov-d"}}
    assert candidate.team_id in teams
    assert len(candidate.member_ids) >= booking.required_providers
    assert set(candidate.member_ids) <= teams[candidate.team_id]

    queue = service.escalation_service.fallback_queue()
    assert [entry.booking.booking_id for entry in queue] == ["bk-1"]
    assert queue[0].fallback_team.candidate_id == candidate.candidate_id
    assert queue[0].assigned_count == 0


def test_assign_fallback_team_staffs_booking_and_clears_queue(tmp_path):
    service, repository, clock = _build_service(tmp_path, "fallback_assign.db")
    _create(service, "bk-1", required_providers=2)
    service.start_matching("bk-1")
    for _ in range(2):
        clock.advance(minutes=16)
        service.run_sweeps()
    requested = service.get_booking("bk-1")

    outcome = service.assign_fallback_team("bk-1", actor_id="operator-1")

    assert outcome.ok
    assert len(outcome.assignments) == 2
    assert all(item.source == "fallback_team" for item in outcome.assignments)
    booking = service.get_booking("bk-1")
    assert booking.status == BookingStatus.PENDING_CLIENT
    # fallback history survives staffing
    assert booking.fallback_requested_at == requested.fallback_requested_at
    assert booking.fallback_requested_at is not None
    assert booking.fallback_team_candidate_id == requested.fallback_team_candidate_id
    assert service.escalation_service.fallback_queue() == []
    assert not any(item.is_outstanding for item in repository.list_booking_invitations("bk-1"))

    overview = GuardrailService(repository=repository, clock=clock).matching_overview()
    assert overview["fallback_requested"] == 1
    assert overview["fallback_escalated"] == 0


def test_retry_count_is_monotonic_and_escalates_once(tmp_path):
    service, _, clock = _build_service(tmp_path, "monotonic.db")
    _create(service, "bk-1")
    service.start_matching("bk-1")

    counts = []
    escalations = []
    for _ in range(6):
        clock.advance(minutes=16)
        report = service.run_sweeps()
        counts.append(service.get_booking("bk-1").matching_retry_count)
        escalations.append(report.escalations)

    assert counts == sorted(counts)
    assert counts[:4] == [1, 2, 3, 4]
    assert counts[-1] == 4
    assert sum(escalations) == 1
    booking = service.get_booking("bk-1")
    assert booking.fallback_escalated_at is not None
    assert booking.status == BookingStatus.PENDING_PROVIDER


def test_short_notice_requests_fallback_on_first_exhaustion(tmp_path):
    service, _, _ = _build_service(tmp_path, "short_notice.db")
    _create(service, "bk-1", hours_ahead=10)
    result = service.start_matching("bk-1")

    for invitation in result.invitations[:-1]:
        service.respond(invitation.invitation_id, "declined")
    last = service.respond(result.invitations[-1].invitation_id, "declined")

    assert last.escalation.retry_count == 1
    assert last.escalation.fallback_requested
    assert last.escalation.fallback_escalated
    assert last.escalation.fallback_team is not None
    assert len(last.escalation.fallback_team.member_ids) == 1


def test_deadline_sweep_escalates_once(tmp_path):
    service, _, clock = _build_service(tmp_path, "deadline.db")
    _create(service, "bk-1", hours_ahead=30, service_category="office")
    result = service.start_matching("bk-1")

    assert result.exhausted
    booking = service.get_booking("bk-1")
    assert booking.short_notice
    assert booking.fallback_requested_at == BASE
    assert booking.fallback_escalated_at is None

    config = service.config_service.current()
    clock.advance(hours=7)
    assert service.escalation_service.sweep_deadlines(config) == 1
    assert service.get_booking("bk-1").fallback_escalated_at == clock.now
    clock.advance(minutes=1)
    assert service.escalation_service.sweep_deadlines(config) == 0


def test_fallback_queue_lists_escalated_first(tmp_path):
    service, repository, _ = _build_service(tmp_path, "queue_order.db")
    for index, booking_id in enumerate(("bk-1", "bk-2", "bk-3", "bk-4")):
        _create(service, booking_id, hours_ahead=120 + index * 4)

    repository.mark_fallback_requested("bk-1", now=BASE + timedelta(minutes=1))
    repository.mark_fallback_requested("bk-2", now=BASE + timedelta(minutes=2))
    repository.mark_fallback_requested("bk-3", now=BASE + timedelta(minutes=3))
    repository.mark_fallback_requested("bk-4", now=BASE + timedelta(minutes=4))
    repository.mark_fallback_escalated("bk-3", now=BASE + timedelta(minutes=5))
    repository.mark_fallback_escalated("bk-2", now=BASE + timedelta(minutes=6))
    assert not repository.mark_fallback_escalated("bk-2", now=BASE + timedelta(minutes=7))
    service.force_assign("bk-4", ["prov-a"])

    queue = service.escalation_service.fallback_queue()
    assert [entry.booking.booking_id for entry in queue] == ["bk-3", "bk-2", "bk-1"]


def test_team_solver_picks_best_members_of_one_team():
    settings = replace(get_settings(), team_solver_workers=1, team_solver_max_time_seconds=5)
    teams = [
        _team("team-x", ["prov-a", "prov-b", "prov-c"]),
        _team("team-y", ["prov-d", "prov-e"]),
    ]
    scores = {"prov-a": 0.9, "prov-b": 0.5, "prov-c": 0.8, "prov-d": 0.7, "prov-e": 0.7}

    pair = solve_team_model(
        artifacts=build_team_model(teams=teams, scores_by_provider=scores, required=2, objective_scale=1000),
        teams=teams,
        scores_by_provider=scores,
        settings=settings,
    )
    assert pair.team.team_id == "team-x"
    assert pair.member_ids == ("prov-a", "prov-c")
    assert abs(pair.total_score - 1.7) < 1e-9

    trio = solve_team_model(
        artifacts=build_team_model(teams=teams, scores_by_provider=scores, required=3, objective_scale=1000),
        teams=teams,
        scores_by_provider=scores,
        settings=settings,
    )
    assert trio.member_ids == ("prov-a", "prov-b", "prov-c")

    none = solve_team_model(
        artifacts=build_team_model(teams=teams, scores_by_provider=scores, required=4, objective_scale=1000),
        teams=teams,
        scores_by_provider=scores,
        settings=settings,
    )
    assert none is None


def test_team_solver_ignores_unranked_members():
    settings = replace(get_settings(), team_solver_workers=1)
    teams = [_team("team-x", ["prov-a", "prov-b", "prov-c"]), _team("team-y", ["prov-d", "prov-e"])]
    scores = {"prov-a": 0.9, "prov-d": 0.4, "prov-e": 0.3}

    selection = solve_team_model(
        artifacts=build_team_model(teams=teams, scores_by_provider=scores, required=2, objective_scale=1000),
        teams=teams,
        scores_by_provider=scores,
        settings=settings,
    )

    assert selection.team.team_id == "team-y"
    assert selection.member_ids == ("prov-d", "prov-e")
