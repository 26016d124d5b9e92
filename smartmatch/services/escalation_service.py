"""Retry, fallback-team and operator escalation policy for stalled bookings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from ortools.sat.python import cp_model

from smartmatch.domain.models import (
    BookingRequest,
    EscalationDecision,
    FallbackQueueEntry,
    MatchingConfig,
    ProviderTeam,
    ScoredCandidate,
)
from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.scoring_service import CandidateScoringService
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import Clock, utc_now


logger = get_logger(__name__)


@dataclass(frozen=True)
class TeamBuildArtifacts:
    model: Any
    team_variables: dict[str, Any]
    member_variables: dict[tuple[str, str], Any]
    objective_coefficients: dict[tuple[str, str], int]


@dataclass(frozen=True)
class TeamSelection:
    team: ProviderTeam
    member_ids: tuple[str, ...]
    total_score: float


def eligible_team_members(
    teams: list[ProviderTeam],
    scores_by_provider: dict[str, float],
    required: int,
) -> dict[str, list[str]]:
    """Members per team that appear in the ranking; teams too small are dropped."""
    eligible: dict[str, list[str]] = {}
    for team in teams:
        members = [
            provider_id
            for provider_id in team.ordered_member_ids()
            if provider_id in scores_by_provider
        ]
        if len(members) >= required:
            eligible[team.team_id] = members
    return eligible


def build_team_model(
    *,
    teams: list[ProviderTeam],
    scores_by_provider: dict[str, float],
    required: int,
    objective_scale: int,
) -> TeamBuildArtifacts:
    """CP-SAT model picking exactly one team and exactly `required` of its members."""
    model = cp_model.CpModel()
    eligible = eligible_team_members(teams, scores_by_provider, required)
    team_variables: dict[str, cp_model.IntVar] = {}
    member_variables: dict[tuple[str, str], cp_model.IntVar] = {}
    objective_coefficients: dict[tuple[str, str], int] = {}

    for team_id, members in eligible.items():
        team_variables[team_id] = model.NewBoolVar(f"x_team_{team_id}")
        for provider_id in members:
            pair = (team_id, provider_id)
            member_variables[pair] = model.NewBoolVar(f"y_team_{team_id}_provider_{provider_id}")
            objective_coefficients[pair] = max(
                0, int(round(scores_by_provider[provider_id] * objective_scale))
            )

    if team_variables:
        model.Add(sum(team_variables.values()) == 1)
    for team_id, team_var in team_variables.items():
        team_members = [
            var for (member_team_id, _), var in member_variables.items() if member_team_id == team_id
        ]
        model.Add(sum(team_members) == required * team_var)

    if member_variables:
        model.Maximize(
            sum(objective_coefficients[pair] * var for pair, var in member_variables.items())
        )
    else:
        model.Maximize(0)

    return TeamBuildArtifacts(
        model=model,
        team_variables=team_variables,
        member_variables=member_variables,
        objective_coefficients=objective_coefficients,
    )


def solve_team_model(
    *,
    artifacts: TeamBuildArtifacts,
    teams: list[ProviderTeam],
    scores_by_provider: dict[str, float],
    settings: Settings,
) -> Optional[TeamSelection]:
    if not artifacts.team_variables:
        return None

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = float(settings.team_solver_max_time_seconds)
    solver.parameters.num_search_workers = settings.team_solver_workers
    solver.parameters.random_seed = settings.team_solver_random_seed

    status = solver.Solve(artifacts.model)
    status_name = solver.StatusName(status)
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        logger.warning("Fallback team solve failed | status=%s", status_name)
        return None

    team_lookup = {team.team_id: team for team in teams}
    chosen_team_id = next(
        team_id for team_id, var in artifacts.team_variables.items() if solver.Value(var) == 1
    )
    chosen_team = team_lookup[chosen_team_id]
    selected = {
        provider_id
        for (team_id, provider_id), var in artifacts.member_variables.items()
        if team_id == chosen_team_id and solver.Value(var) == 1
    }
    member_ids = tuple(
        provider_id for provider_id in chosen_team.ordered_member_ids() if provider_id in selected
    )
    total_score = float(sum(scores_by_provider[provider_id] for provider_id in member_ids))
    logger.info(
        "Fallback team solve completed | status=%s | team_id=%s | members=%s | total_score=%.6f",
        status_name,
        chosen_team_id,
        len(member_ids),
        total_score,
    )
    return TeamSelection(team=chosen_team, member_ids=member_ids, total_score=total_score)


class EscalationService:
    """Decides what happens after a booking runs out of outstanding invitations."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        scoring_service: Optional[CandidateScoringService] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._scoring_service = scoring_service or CandidateScoringService(
            repository=self._repository,
            settings=self._settings,
        )
        self._clock = clock

    def is_short_notice(self, booking: BookingRequest, config: MatchingConfig, now: datetime) -> bool:
        if booking.short_notice:
            return True
        return booking.start_at - now <= timedelta(hours=config.short_notice_hours)

    def select_fallback_team(
        self,
        booking: BookingRequest,
        config: MatchingConfig,
        ranked: Optional[list[ScoredCandidate]] = None,
    ) -> Optional[TeamSelection]:
        remaining = booking.required_providers - self._repository.count_assignments(booking.booking_id)
        if remaining <= 0:
            return None
        if ranked is None:
            ranked = self._scoring_service.rank(
                booking,
                config=config,
                distance_max_km=config.relaxed_distance_km(booking.matching_retry_count),
            )
        scores_by_provider = {item.provider_id: item.score for item in ranked}
        teams = self._repository.list_active_teams(service_category=booking.service_category)
        artifacts = build_team_model(
            teams=teams,
            scores_by_provider=scores_by_provider,
            required=remaining,
            objective_scale=self._settings.team_objective_scale,
        )
        return solve_team_model(
            artifacts=artifacts,
            teams=teams,
            scores_by_provider=scores_by_provider,
            settings=self._settings,
        )

    def handle_exhaustion(self, booking: BookingRequest, config: MatchingConfig) -> EscalationDecision:
        now = self._clock()
        retry_count = self._repository.increment_retry_count(booking.booking_id, now=now)
        relaxed_km = config.relaxed_distance_km(retry_count)
        short_notice = self.is_short_notice(booking, config, now)

        fallback_requested = booking.fallback_requested_at is not None
        fallback_team = None
        if retry_count >= config.fallback_threshold or short_notice:
            selection = None
            if booking.fallback_team_candidate_id is None:
                selection = self.select_fallback_team(
                    booking,
                    config,
                    ranked=self._scoring_service.rank(
                        booking,
                        config=config,
                        distance_max_km=relaxed_km,
                    ),
                )
            payload = None
            if selection is not None:
                payload = {
                    "team_id": selection.team.team_id,
                    "name": selection.team.name,
                    "preferred_size": selection.team.preferred_size,
                    "member_ids": selection.member_ids,
                    "total_score": selection.total_score,
                }
            _, fallback_team = self._repository.mark_fallback_requested(
                booking.booking_id,
                now=now,
                fallback_candidate=payload,
            )
            fallback_requested = True
            if fallback_team is None and booking.fallback_team_candidate_id is not None:
                fallback_team = self._repository.get_fallback_team_candidate(
                    booking.fallback_team_candidate_id
                )

        within_deadline = booking.start_at - now <= timedelta(hours=config.escalation_deadline_hours)
        fallback_escalated = booking.fallback_escalated_at is not None
        newly_escalated = False
        if retry_count >= config.max_retry_attempts or (fallback_requested and within_deadline):
            newly_escalated = self._repository.mark_fallback_escalated(booking.booking_id, now=now)
            fallback_escalated = True

        decision = EscalationDecision(
            booking_id=booking.booking_id,
            retry_count=retry_count,
            reissue=retry_count <= config.max_retry_attempts,
            distance_max_km=relaxed_km,
            fallback_requested=fallback_requested,
            fallback_escalated=fallback_escalated,
            fallback_team=fallback_team,
            newly_escalated=newly_escalated,
        )
        logger.info(
            (
                "Booking exhausted | booking_id=%s | retry_count=%s | reissue=%s | "
                "distance_max_km=%.2f | fallback_requested=%s | escalated=%s | short_notice=%s"
            ),
            booking.booking_id,
            retry_count,
            decision.reissue,
            relaxed_km,
            fallback_requested,
            fallback_escalated,
            short_notice,
        )
        return decision

    def sweep_deadlines(self, config: MatchingConfig) -> int:
        """Escalate fallback-requested bookings that now start within the deadline."""
        now = self._clock()
        due = self._repository.list_escalation_due(
            deadline=now + timedelta(hours=config.escalation_deadline_hours),
            limit=self._settings.sweep_batch_size,
        )
        escalated = 0
        for booking in due:
            if self._repository.mark_fallback_escalated(booking.booking_id, now=now):
                escalated += 1
                logger.info("Fallback escalated by deadline | booking_id=%s", booking.booking_id)
        return escalated

    def list_stalled(self, config: MatchingConfig) -> list[BookingRequest]:
        now = self._clock()
        return self._repository.list_stalled_bookings(
            now=now,
            idle_since=now - timedelta(minutes=self._settings.matching_retry_interval_minutes),
            max_retry_count=config.max_retry_attempts,
            limit=self._settings.sweep_batch_size,
        )

    def fallback_queue(self, limit: int = 100) -> list[FallbackQueueEntry]:
        entries: list[FallbackQueueEntry] = []
        for booking, assigned_count in self._repository.list_fallback_queue(limit=limit):
            fallback_team = None
            if booking.fallback_team_candidate_id is not None:
                fallback_team = self._repository.get_fallback_team_candidate(
                    booking.fallback_team_candidate_id
                )
            entries.append(
                FallbackQueueEntry(
                    booking=booking,
                    assigned_count=assigned_count,
                    fallback_team=fallback_team,
                )
            )
        return entries
